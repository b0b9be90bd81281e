"""
Catalog store: pricing plans, products, leads and orders.

Plans and products are returned with the translation for the requested
language, falling back to English when that language has none.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from clara.storage.db import connect, init_db, new_id, sql, utc_timestamp

FALLBACK_LANGUAGE = "en"


def _load_json(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


def _pick_translation(rows: List[Dict[str, Any]], language: str) -> Optional[Dict[str, Any]]:
    by_language = {r["language"]: r for r in rows}
    return by_language.get(language) or by_language.get(FALLBACK_LANGUAGE)


def _translations(conn: Any, table: str, key: str, ids: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = {i: [] for i in ids}
    if not ids:
        return out
    placeholders = ", ".join("?" for _ in ids)
    rows = conn.execute(
        sql(f"SELECT * FROM {table} WHERE {key} IN ({placeholders})"),
        tuple(ids),
    ).fetchall()
    for r in rows:
        row = dict(r)
        out.setdefault(row[key], []).append(row)
    return out


def _plan_to_dict(row: Dict[str, Any], translation: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    plan = {
        "id": row["id"],
        "slug": row["slug"],
        "monthly_price": float(row["monthly_price"]),
        "devices_included": row["devices_included"],
        "family_dashboards": row["family_dashboards"],
        "is_popular": bool(row["is_popular"]),
        "sort_order": row["sort_order"],
        "translation": None,
    }
    if translation:
        plan["translation"] = {
            "language": translation["language"],
            "name": translation["name"],
            "description": translation["description"],
            "features": _load_json(translation["features"], []),
        }
    return plan


def _product_to_dict(row: Dict[str, Any], translation: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    product = {
        "id": row["id"],
        "slug": row["slug"],
        "category": row["category"],
        "monthly_price": float(row["monthly_price"] or 0),
        "is_popular": bool(row["is_popular"]),
        "sort_order": row["sort_order"],
        "translation": None,
    }
    if translation:
        product["translation"] = {
            "language": translation["language"],
            "name": translation["name"],
            "tagline": translation["tagline"],
            "description": translation["description"],
            "price_display": translation["price_display"],
            "features": _load_json(translation["features"], []),
        }
    return product


def list_active_plans(language: str = FALLBACK_LANGUAGE) -> List[Dict[str, Any]]:
    init_db()
    with connect() as conn:
        rows = [
            dict(r)
            for r in conn.execute(
                sql("SELECT * FROM pricing_plans WHERE is_active = ? ORDER BY sort_order, slug"),
                (True,),
            ).fetchall()
        ]
        translations = _translations(conn, "plan_translations", "plan_id", [r["id"] for r in rows])
    return [_plan_to_dict(r, _pick_translation(translations.get(r["id"], []), language)) for r in rows]


def list_device_products(language: str = FALLBACK_LANGUAGE) -> List[Dict[str, Any]]:
    init_db()
    with connect() as conn:
        rows = [
            dict(r)
            for r in conn.execute(
                sql("SELECT * FROM products WHERE is_active = ? AND category = ? ORDER BY sort_order, slug"),
                (True, "device"),
            ).fetchall()
        ]
        translations = _translations(conn, "product_translations", "product_id", [r["id"] for r in rows])
    return [_product_to_dict(r, _pick_translation(translations.get(r["id"], []), language)) for r in rows]


def get_plan(plan_id: str, language: str = FALLBACK_LANGUAGE) -> Optional[Dict[str, Any]]:
    init_db()
    with connect() as conn:
        row = conn.execute(sql("SELECT * FROM pricing_plans WHERE id = ?"), (plan_id,)).fetchone()
        if row is None:
            return None
        row = dict(row)
        translations = _translations(conn, "plan_translations", "plan_id", [row["id"]])
    return _plan_to_dict(row, _pick_translation(translations[row["id"]], language))


def get_products(product_ids: Sequence[str], language: str = FALLBACK_LANGUAGE) -> List[Dict[str, Any]]:
    """Products by id, in the order the ids were given; unknown ids are skipped."""
    ids = [str(i) for i in product_ids]
    if not ids:
        return []
    init_db()
    placeholders = ", ".join("?" for _ in ids)
    with connect() as conn:
        rows = {
            dict(r)["id"]: dict(r)
            for r in conn.execute(
                sql(f"SELECT * FROM products WHERE id IN ({placeholders})"),
                tuple(ids),
            ).fetchall()
        }
        translations = _translations(conn, "product_translations", "product_id", list(rows))
    return [
        _product_to_dict(rows[i], _pick_translation(translations.get(i, []), language))
        for i in ids
        if i in rows
    ]


def add_plan(
    *,
    slug: str,
    monthly_price: float,
    devices_included: int = 0,
    family_dashboards: int = 0,
    is_active: bool = True,
    is_popular: bool = False,
    sort_order: int = 0,
    translations: Optional[Dict[str, Dict[str, Any]]] = None,
    plan_id: Optional[str] = None,
) -> str:
    init_db()
    plan_id = plan_id or new_id()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO pricing_plans "
                "(id, slug, monthly_price, devices_included, family_dashboards, is_active, is_popular, sort_order) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (plan_id, slug, monthly_price, devices_included, family_dashboards, is_active, is_popular, sort_order),
        )
        for language, t in (translations or {}).items():
            conn.execute(
                sql(
                    "INSERT INTO plan_translations (id, plan_id, language, name, description, features) "
                    "VALUES (?, ?, ?, ?, ?, ?)"
                ),
                (new_id(), plan_id, language, t["name"], t.get("description"), json.dumps(t.get("features", []))),
            )
        conn.commit()
    return plan_id


def add_product(
    *,
    slug: str,
    category: str,
    monthly_price: float,
    product_type: Optional[str] = None,
    is_active: bool = True,
    is_popular: bool = False,
    sort_order: int = 0,
    translations: Optional[Dict[str, Dict[str, Any]]] = None,
    product_id: Optional[str] = None,
) -> str:
    init_db()
    product_id = product_id or new_id()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO products "
                "(id, slug, category, product_type, monthly_price, is_active, is_popular, sort_order) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (product_id, slug, category, product_type, monthly_price, is_active, is_popular, sort_order),
        )
        for language, t in (translations or {}).items():
            conn.execute(
                sql(
                    "INSERT INTO product_translations "
                    "(id, product_id, language, name, tagline, description, price_display, features) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    new_id(),
                    product_id,
                    language,
                    t["name"],
                    t.get("tagline"),
                    t.get("description"),
                    t.get("price_display"),
                    json.dumps(t.get("features", [])),
                ),
            )
        conn.commit()
    return product_id


def count_plans() -> int:
    init_db()
    with connect() as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM pricing_plans").fetchone()
    return int(dict(row)["n"])


def create_lead(
    *,
    name: str,
    email: str,
    interest_type: str,
    source_page: str,
    phone: Optional[str] = None,
    message: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> str:
    """Insert a lead with status 'new'; return its id."""
    init_db()
    lead_id = new_id()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO leads "
                "(id, name, email, phone, interest_type, lead_type, message, status, source_page, "
                "clara_conversation_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                lead_id,
                name,
                email,
                phone,
                interest_type,
                interest_type,
                message,
                "new",
                source_page,
                conversation_id,
                utc_timestamp(),
            ),
        )
        conn.commit()
    return lead_id


def list_leads() -> List[Dict[str, Any]]:
    init_db()
    with connect() as conn:
        rows = conn.execute("SELECT * FROM leads ORDER BY created_at").fetchall()
    return [dict(r) for r in rows]


def create_order(
    *,
    plan_id: str,
    devices: Sequence[str],
    total_monthly: float,
    customer_email: str,
    customer_name: str,
    session_id: Optional[str],
    conversation_id: Optional[str],
) -> str:
    init_db()
    order_id = new_id()
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO orders "
                "(id, plan_id, selected_devices, total_monthly, customer_email, customer_name, session_id, "
                "conversation_id, payment_status, created_by, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                order_id,
                plan_id,
                json.dumps(list(devices)),
                total_monthly,
                customer_email,
                customer_name,
                session_id,
                conversation_id,
                "pending",
                "clara",
                utc_timestamp(),
            ),
        )
        conn.commit()
    return order_id


def attach_stripe_session(order_id: str, stripe_session_id: str) -> None:
    with connect() as conn:
        conn.execute(
            sql("UPDATE orders SET stripe_session_id = ? WHERE id = ?"),
            (stripe_session_id, order_id),
        )
        conn.commit()


def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    init_db()
    with connect() as conn:
        row = conn.execute(sql("SELECT * FROM orders WHERE id = ?"), (order_id,)).fetchone()
    if row is None:
        return None
    order = dict(row)
    order["selected_devices"] = _load_json(order.get("selected_devices"), [])
    return order

"""clara-gateway console script: run the server, or print setup help and diagnostics."""

from __future__ import annotations

import os
import platform
import shutil
import sys
from typing import Callable, Dict, List, Tuple

MIN_PYTHON = (3, 10)

DEFAULT_PORT = 4280

# (variable, example value, what it does)
OPTIONAL_ENV: Tuple[Tuple[str, str, str], ...] = (
    ("DATABASE_URL", "postgresql://...", "Postgres/Supabase instead of the local SQLite file"),
    ("STRIPE_SECRET_KEY", "sk_...", "payment links; orders are saved either way"),
    ("SUPABASE_JWT_SECRET", "...", "links conversations to signed-in users"),
    ("CHECKOUT_URL", "https://.../clara-checkout", "use a separately deployed checkout endpoint"),
    ("KNOWLEDGE_MAX_CHARS", "20000", "cap on knowledge text injected into the prompt"),
)


def _print_setup_banner(
    agent: str,
    provider: str,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Startup line plus .env guidance; `setup` prints the same guidance under a header."""
    key_note = "no API key required" if provider == "stub" else "API key from .env"
    print()
    if for_startup:
        print(f"Clara chat gateway started — agent: {agent}")
        print(f"Provider: {provider} ({key_note})")
    else:
        print("Clara Gateway — Setup")
        print(f"Agent: {agent}  |  Provider: {provider} ({key_note})")
    print(f"Chat endpoint: http://localhost:{port}/clara-chat")
    print()
    print("────────────────────────────────────────────")
    print("To answer with a real model, put the AI gateway key in .env:")
    print()
    print("   PROVIDER=lovable")
    print("   LOVABLE_API_KEY=YOUR_KEY_HERE")
    print()
    print("Optional:")
    width = max(len(name) + len(example) for name, example, _ in OPTIONAL_ENV) + 4
    for name, example, note in OPTIONAL_ENV:
        print(f"   {(name + '=' + example).ljust(width)}{note}")
    print()
    print("Restart clara-gateway after editing .env.")
    print()


def _print_help() -> None:
    print("Clara Gateway CLI")
    print()
    print("Usage:")
    print("  clara-gateway               Start the chat gateway server")
    print("  clara-gateway setup         Print setup/env guidance")
    print("  clara-gateway doctor        Print install/environment diagnostics")
    print()


def _doctor_issues() -> List[str]:
    from .agent_presets import AGENT_PRESETS_DIR, PresetLoadError, list_agent_presets, load_agent_preset
    from .config import get_settings

    issues: List[str] = []
    if sys.version_info < MIN_PYTHON:
        issues.append(f"Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")
    settings = get_settings()
    presets = list_agent_presets(AGENT_PRESETS_DIR)
    for path in presets:
        try:
            load_agent_preset(path)
        except PresetLoadError as exc:
            issues.append(str(exc))
    if settings.agent_name not in {p.stem for p in presets}:
        issues.append(f"No bundled preset for AGENT_NAME={settings.agent_name}; it must already exist in the database.")
    if settings.provider_name == "stub":
        issues.append("PROVIDER is stub: replies are canned and no tools are called.")
    return issues


def _print_doctor() -> None:
    from .config import get_settings
    from .storage.db import get_db_info

    settings = get_settings()
    db = get_db_info()
    database = f"sqlite ({db.db_path})" if db.dialect == "sqlite" else db.dialect
    rows = [
        ("Platform", platform.platform()),
        ("Python", ".".join(str(part) for part in sys.version_info[:3])),
        ("Exe", sys.executable),
        ("In venv", "yes" if sys.prefix != sys.base_prefix else "no"),
        ("PATH bin", shutil.which("clara-gateway") or "not found"),
        ("Agent", settings.agent_name),
        ("Provider", settings.provider_name),
        ("Database", database),
        ("Stripe", "configured" if settings.stripe_secret_key else "not configured"),
        ("Checkout", settings.checkout_url or "in-process"),
    ]
    print("Clara Gateway Doctor")
    print()
    for label, value in rows:
        print(f"{label + ':':<10}{value}")
    for issue in _doctor_issues():
        print(f"Issue: {issue}")


def _serve() -> None:
    import uvicorn

    from .config import get_settings

    settings = get_settings()
    port = int(os.environ.get("PORT", str(DEFAULT_PORT)))
    _print_setup_banner(settings.agent_name, settings.provider_name, port, for_startup=True)
    uvicorn.run("clara.main:app", host=os.environ.get("HOST", "0.0.0.0"), port=port)


def _setup() -> None:
    from .config import get_settings

    settings = get_settings()
    port = int(os.environ.get("PORT", str(DEFAULT_PORT)))
    _print_setup_banner(settings.agent_name, settings.provider_name, port, for_startup=False)


COMMANDS: Dict[str, Callable[[], None]] = {
    "setup": _setup,
    "doctor": _print_doctor,
    "help": _print_help,
    "-h": _print_help,
    "--help": _print_help,
}


def main() -> None:
    if len(sys.argv) < 2:
        _serve()
        return
    name = sys.argv[1].strip().lower()
    command = COMMANDS.get(name)
    if command is None:
        print(f"Unknown command: {name}", file=sys.stderr)
        _print_help()
        sys.exit(2)
    command()
    sys.exit(0)


if __name__ == "__main__":
    main()

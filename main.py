#!/usr/bin/env python3
"""
Keyway -- session-based login, email-verified signup and password reset.

Usage:
  python main.py --dev
  python main.py --port 8080 --url https://auth.example.com \\
      --db-url postgresql+psycopg://keyway:secret@db/keyway \\
      --smtp-host smtp.example.com --smtp-port 587 \\
      --smtp-user keyway --smtp-pass secret --smtp-addr noreply@example.com

Every flag maps to the environment variable core/config.py reads (e.g.
--smtp-host -> SMTP_HOST). Flags override the environment and .env; anything
not given on the command line falls through to them.
"""

import argparse
import os

import uvicorn

# flag dest -> environment variable read by core.config.Settings
_ENV_FLAGS = {
    "port": "PORT",
    "url": "BASE_URL",
    "db_url": "DATABASE_URL",
    "storage": "STORAGE_BACKEND",
    "smtp_host": "SMTP_HOST",
    "smtp_port": "SMTP_PORT",
    "smtp_user": "SMTP_USERNAME",
    "smtp_pass": "SMTP_PASSWORD",
    "smtp_addr": "SMTP_SENDER",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyway",
        description="Run the Keyway authentication server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--port", type=int, help="HTTP port (default: 8080)")
    parser.add_argument("--dev", action="store_true", help="Development mode: mail is logged, not sent")
    parser.add_argument("--url", metavar="URL", help="Base URL used in verification links")
    parser.add_argument("--db-url", metavar="URL", help="SQLAlchemy database URL")
    parser.add_argument("--storage", choices=["sql", "memory"], help="Storage backend (default: sql)")
    parser.add_argument("--smtp-host", metavar="HOST", help="SMTP host")
    parser.add_argument("--smtp-port", type=int, metavar="PORT", help="SMTP port (default: 2525)")
    parser.add_argument("--smtp-user", metavar="USER", help="SMTP username")
    parser.add_argument("--smtp-pass", metavar="PASS", help="SMTP password")
    parser.add_argument("--smtp-addr", metavar="ADDR", help="SMTP sender address")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    return parser


def apply_env(args: argparse.Namespace) -> None:
    """Export the given flags as environment variables for core.config.Settings."""
    if args.dev:
        os.environ["DEBUG"] = "true"
    for dest, env_name in _ENV_FLAGS.items():
        value = getattr(args, dest)
        if value is not None:
            os.environ[env_name] = str(value)


def main() -> None:
    args = _build_parser().parse_args()
    apply_env(args)

    # Imported after apply_env so the settings singleton sees the flags.
    from core.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",  # nosec B104 -- container deployments bind all interfaces
        port=settings.port,
        reload=args.reload,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()

"""Operator CLI for two-factor accounts: status, attempt history, break-glass disable."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Iterable, Optional

from services.security import TwoFactorError
from services.twofactor_service import TwoFactorService
from utils.config import load_settings
from utils.structured_logging import configure_structured_logging

LOG = logging.getLogger("fahampesa.scripts.twofactor_admin")


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _dump(payload: Any) -> str:
    return json.dumps(payload, default=_jsonable, indent=2, sort_keys=True)


async def _run(args: argparse.Namespace, service: TwoFactorService) -> int:
    auth = service.authenticator
    try:
        await service.start()
        if args.command == "status":
            status = await auth.get_two_factor_status(args.account)
            payload = asdict(status)
            payload["requires_two_factor"] = await auth.requires_two_factor(args.account)
            print(_dump(payload))
        elif args.command == "attempts":
            attempts = await auth.get_two_factor_attempts(args.account, args.limit)
            print(_dump([asdict(a) for a in attempts]))
        elif args.command == "emergency-disable":
            await auth.emergency_disable_two_factor(args.account, args.admin, reason=args.reason)
            LOG.warning("emergency 2FA disable for %s by %s", args.account, args.admin)
            print(_dump({"account": args.account, "disabled": True}))
        return 0
    except TwoFactorError as exc:
        LOG.error("%s: %s", args.command, exc)
        print(_dump({"error": str(exc)}))
        return 2
    finally:
        await service.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FahamPesa two-factor administration")
    sub = parser.add_subparsers(dest="command", required=True)

    p_status = sub.add_parser("status", help="Show 2FA status for an account")
    p_status.add_argument("account")

    p_attempts = sub.add_parser("attempts", help="Recent 2FA attempts, newest first")
    p_attempts.add_argument("account")
    p_attempts.add_argument("--limit", type=int, default=None)

    p_disable = sub.add_parser("emergency-disable", help="Disable 2FA without a code (audited)")
    p_disable.add_argument("account")
    p_disable.add_argument("--admin", required=True, help="Account id of the acting administrator")
    p_disable.add_argument("--reason", default="Emergency 2FA disable")
    return parser


def main(argv: Optional[Iterable[str]] = None, *, service: Optional[TwoFactorService] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if service is None:
        service = TwoFactorService(load_settings())
    return asyncio.run(_run(args, service))


if __name__ == "__main__":  # pragma: no cover
    configure_structured_logging()
    raise SystemExit(main())

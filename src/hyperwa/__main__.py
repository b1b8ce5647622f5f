from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from .adapters import PyaileysSocketFactory
from .bot import EXIT_FATAL, HyperWaBot
from .exceptions import ConfigError, HyperWaError, StoreUnavailable
from .log import setup_logging
from .settings import Settings

logger = logging.getLogger("hyperwa.main")


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hyperwa", description="Run the HyperWa userbot.")
    p.add_argument("--auth", type=Path, help="auth directory (default: ./auth_info)")
    p.add_argument("--no-mongo", action="store_true", help="keep the session on disk only")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--log-json", action="store_true", help="log one JSON object per line")
    return p


def load_settings(argv: Sequence[str] | None = None) -> Settings:
    args = _parser().parse_args(argv)
    settings = Settings.from_env()
    if args.auth is not None:
        settings.auth.auth_dir = args.auth
    if args.no_mongo:
        settings.auth.use_mongo_auth = False
    if args.log_level:
        settings.log.level = args.log_level.upper()
    if args.log_json:
        settings.log.json = True
    settings.validate()
    return settings


def _print_qr(payload: str) -> None:
    print("\nScan this QR in WhatsApp -> Settings -> Linked devices -> Link a device\n")
    with contextlib.suppress(ImportError):
        import qrcode  # optional extra

        qr = qrcode.QRCode(border=1)
        qr.add_data(payload)
        qr.make(fit=True)
        qr.print_ascii(invert=True)
        return
    print("QR string:", payload)


async def _run(settings: Settings) -> int:
    bot = HyperWaBot(settings, PyaileysSocketFactory())

    async def on_qr(payload: str) -> None:
        _print_qr(payload)

    bot.on_qr(on_qr)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, bot.request_stop)

    try:
        await bot.initialize()
    except StoreUnavailable as e:
        logger.error("cannot reach MongoDB: %s", e)
        await bot.shutdown()
        return EXIT_FATAL
    except HyperWaError as e:
        logger.error("startup failed: %s", e)
        await bot.shutdown()
        return EXIT_FATAL
    return await bot.run()


def main(argv: Sequence[str] | None = None) -> int:
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        print(f"hyperwa: {e}", file=sys.stderr)
        return 1
    setup_logging(settings.log)
    return asyncio.run(_run(settings))


if __name__ == "__main__":
    sys.exit(main())

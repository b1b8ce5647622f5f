"""
Minimal HyperWa bot with a couple of commands.

Demonstrates:
- MongoDB-backed session restore + debounced saves (set MONGO_URI)
- file-only auth with --no-mongo
- registering prefix commands and a catch-all listener
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import time
from pathlib import Path

from hyperwa import HyperWaBot, Settings
from hyperwa.adapters import PyaileysSocketFactory
from hyperwa.connection import IncomingMessage
from hyperwa.dispatch import CommandContext
from hyperwa.log import setup_logging

logger = logging.getLogger("hyperwa.examples.ping")


async def main() -> int:
    ap = argparse.ArgumentParser(prog="ping_bot.py")
    ap.add_argument("--auth", default="./auth_info", help="auth folder (default: ./auth_info)")
    ap.add_argument("--no-mongo", action="store_true", help="keep the session on disk only")
    args = ap.parse_args()

    settings = Settings.from_env()
    settings.auth.auth_dir = Path(args.auth).expanduser().resolve()
    if args.no_mongo:
        settings.auth.use_mongo_auth = False
    settings.validate()
    setup_logging(settings.log)

    bot = HyperWaBot(settings, PyaileysSocketFactory())
    started = time.monotonic()

    @bot.dispatcher.command("ping", description="check that the bot responds")
    async def ping(ctx: CommandContext) -> None:
        await ctx.reply("pong")

    @bot.dispatcher.command("uptime", description="time since start", permissions="owner")
    async def uptime(ctx: CommandContext) -> None:
        await ctx.reply(f"up {int(time.monotonic() - started)}s")

    @bot.dispatcher.on_message
    async def log_message(message: IncomingMessage) -> None:
        logger.info("%s: %s", message.sender_jid or message.chat_jid, message.text or "<non-text>")

    async def on_qr(payload: str) -> None:
        print("\nScan this QR in WhatsApp -> Settings -> Linked devices -> Link a device\n")
        with contextlib.suppress(ImportError):
            import qrcode  # optional extra

            qr = qrcode.QRCode(border=1)
            qr.add_data(payload)
            qr.make(fit=True)
            qr.print_ascii(invert=True)
            return
        print("QR string:", payload)

    bot.on_qr(on_qr)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, bot.request_stop)

    await bot.initialize()
    return await bot.run()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))

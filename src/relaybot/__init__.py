"""
RelayBot - Twitch chat automation over EventSub and Helix.

This package provides a single-channel bot with:
- EventSub WebSocket sessions with reconnect and backoff
- A signed webhook ingress forwarding chat to a local intake
- A config-driven command router with roles, cooldowns and quotas
- A link guard with time-boxed permits
"""

from relaybot.bot import RelayBot
from relaybot.config import Config, load_config

__version__ = "1.0.0"
__all__ = ["RelayBot", "Config", "load_config", "main"]


def main() -> None:
    """Entry point for the bot."""
    import asyncio
    import signal
    import sys

    from relaybot.utils.logging import setup_logging, get_logger

    # Load configuration
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)
    logger = get_logger(__name__)

    logger.info("Starting RelayBot v%s", __version__)

    async def runner() -> None:
        try:
            bot = RelayBot(config)
        except ValueError as e:
            logger.error("Invalid command configuration: %s", e)
            raise SystemExit(1)

        # Handle graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, bot.stop)
            except NotImplementedError:
                # Windows
                pass
        await bot.run()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except SystemExit:
        raise
    except Exception as e:
        logger.exception("Bot crashed with error: %s", e)
        sys.exit(1)
    finally:
        logger.info("Bot shutdown complete")

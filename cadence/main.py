"""
Cadence - streaming chat assistant
Main Entry Point

Runs the assistant on Slack, or answers a single prompt on the console.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env BEFORE any other imports that read os.environ or settings
load_dotenv(dotenv_path=Path(".") / ".env", override=True)

import structlog

from cadence.channels.base import BaseChannel
from cadence.channels.console import ConsoleChannel
from cadence.channels.slack import SlackChannel
from cadence.core.assistant import Assistant
from cadence.core.events import EventBus, StreamStats
from cadence.core.tools import create_default_tools
from cadence.providers import build_registry
from cadence.streaming.config import StreamConfig
from cadence.utils.config import Settings, get_settings
from cadence.utils.logging import setup_logging

logger = structlog.get_logger()


class CadenceApplication:
    """Builds the provider, assistant and channels from settings."""

    def __init__(
        self,
        settings: Settings,
        provider_name: str | None = None,
        humanizer_degree: int | None = None,
    ) -> None:
        self.settings = settings
        self.shutdown_event = asyncio.Event()
        self.events = EventBus()
        self.stats = StreamStats().attach(self.events)
        self.channels: list[BaseChannel] = []

        registry = build_registry()
        self.provider = registry.create(provider_name or settings.llm.provider, settings)
        self.assistant = Assistant(
            settings,
            self.provider,
            tools=create_default_tools(),
            events=self.events,
            stream_config=StreamConfig.from_settings(settings, humanizer_degree=humanizer_degree),
        )

    async def run_prompt(self, prompt: str) -> int:
        """Answer one prompt on stdout. Returns a process exit code."""
        console = ConsoleChannel()
        self.assistant.attach(console)
        await console.start()
        try:
            message = await console.submit(prompt)
        finally:
            await console.stop()
        logger.debug("Prompt answered", message_id=message.id, replies=len(console.sent))
        return 0 if console.sent else 1

    async def run_server(self) -> None:
        """Connect the configured channels and serve until shutdown."""
        slack_cfg = self.settings.channels.slack
        if slack_cfg.enabled:
            bot_token = self.settings.slack_bot_token or slack_cfg.bot_token
            app_token = self.settings.slack_app_token or slack_cfg.app_token
            if not bot_token:
                logger.error("Slack enabled but SLACK_BOT_TOKEN is not set in .env")
            elif not app_token:
                logger.error("Slack enabled but SLACK_APP_TOKEN is not set in .env")
            else:
                self.channels.append(SlackChannel(self.settings))

        if not self.channels:
            raise RuntimeError("No channels configured; use --prompt for a one-shot console run")

        for channel in self.channels:
            self.assistant.attach(channel)
            await channel.start()

        logger.info("Cadence is running", channels=[c.name for c in self.channels])
        try:
            await self.shutdown_event.wait()
        finally:
            await self.cleanup()

    async def shutdown(self) -> None:
        """Trigger graceful shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    async def cleanup(self) -> None:
        """Disconnect channels."""
        for channel in self.channels:
            try:
                await channel.stop()
            except Exception as e:
                logger.error("Failed to stop channel", channel=channel.name, error=str(e))
        logger.info("Stream totals", **self.stats.summary())


async def main(args: argparse.Namespace) -> int:
    """Main entry point."""
    settings = Settings.from_yaml(args.config) if args.config else get_settings()
    settings.ensure_directories()

    # The reply owns stdout when answering a single prompt
    if args.prompt:
        setup_logging(level="WARNING", settings=settings, console=sys.stderr)
    else:
        setup_logging(settings=settings)

    app = CadenceApplication(
        settings,
        provider_name=args.provider,
        humanizer_degree=args.humanizer,
    )

    if args.prompt:
        return await app.run_prompt(args.prompt)

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        asyncio.create_task(app.shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await app.run_server()
    return 0


def run() -> None:
    """Synchronous entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        prog="cadence",
        description="Cadence - streaming chat assistant",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="Settings YAML file (default: config/settings.yaml if present)",
    )
    parser.add_argument(
        "--prompt",
        default=None,
        help="Answer a single prompt on the console and exit",
    )
    parser.add_argument(
        "--provider",
        default=None,
        help="Provider identifier overriding llm.provider (anthropic, openrouter, nvidia, ollama)",
    )
    parser.add_argument(
        "--humanizer",
        type=int,
        choices=range(0, 4),
        default=None,
        metavar="DEGREE",
        help="Humanizer degree 0-3 overriding streaming.humanizer_degree",
    )
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(main(args))
    except KeyboardInterrupt:
        exit_code = 130
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    run()

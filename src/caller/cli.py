"""Interactive command-line call client.

Connects to the matchmaker, routes server messages to the negotiation
engine and reads commands from stdin.
"""

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from caller.config import CallerConfig
from caller.engine import NegotiationEngine
from caller.errors import MicrophonePermissionError, NoPartnerContextError
from caller.media import SounddeviceMicrophone, SounddeviceSpeaker
from caller.peer import aiortc_peer_factory
from caller.signaling import SignalingClient
from matchmaker.protocol import (
    ErrorMessage,
    HelloMessage,
    MatchedMessage,
    PeerLeftMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    SearchingAckMessage,
    ServerMessage,
)

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  search  - Find a random partner
  cancel  - Stop searching
  mute    - Mute the microphone
  unmute  - Unmute the microphone
  end     - Hang up
  stats   - Show transport statistics
  status  - Show call status
  quit    - Exit client
  help    - Show this help
"""


def format_duration(seconds: float) -> str:
    """Render a call timer as MM:SS."""
    total = int(seconds)
    return f"{total // 60:02d}:{total % 60:02d}"


class CallClient:
    """Routes signaling traffic to the engine and handles user commands."""

    def __init__(self, signaling: SignalingClient, engine: NegotiationEngine) -> None:
        """Initialize call client.

        Args:
            signaling: Connected signaling client
            engine: Negotiation engine driving the call
        """
        self.signaling = signaling
        self.engine = engine
        self.running = True
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, message: ServerMessage) -> asyncio.Task[None]:
        """Handle a server message in its own task.

        Returns:
            The task handling the message
        """
        task = asyncio.create_task(self._guarded(self.handle_message(message), message.type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, None], message_type: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(
                "Failed to handle server message",
                extra={"type": message_type, "error": str(e)},
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for in-flight message handlers."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def handle_message(self, message: ServerMessage) -> None:
        """Route one server message to the engine.

        Args:
            message: Parsed server message
        """
        if isinstance(message, HelloMessage):
            logger.debug("Duplicate hello ignored", extra={"connection_id": message.connection_id})

        elif isinstance(message, SearchingAckMessage):
            print("\nSearching for a partner...")

        elif isinstance(message, MatchedMessage):
            print(f"\nMatched with {message.partner_id}")
            await self.engine.on_matched(message.partner_id, message.should_initiate)

        elif isinstance(message, RelayedOfferMessage):
            await self.engine.on_offer(message.sdp, message.from_id)

        elif isinstance(message, RelayedAnswerMessage):
            await self.engine.on_answer(message.sdp, message.from_id)

        elif isinstance(message, RelayedIceCandidateMessage):
            await self.engine.on_remote_candidate(message.candidate, message.from_id)

        elif isinstance(message, PeerLeftMessage):
            was_partner = message.from_id == self.engine.partner_id
            await self.engine.on_partner_left(message.from_id)
            if was_partner:
                print("\nPartner left the call")

        elif isinstance(message, ErrorMessage):
            logger.error(f"Server error [{message.code}]: {message.message}")
            print(f"\nError: {message.message}")

        else:
            logger.warning("Unhandled message type", extra={"type": message.type})

    def format_status(self) -> str:
        engine = self.engine
        lines = [
            f"Phase:         {engine.phase.value}",
            f"Partner:       {engine.partner_id or '-'}",
            f"Call time:     {format_duration(engine.call_duration())}",
            f"ICE:           {engine.connectivity.value}",
            f"Remote tracks: {engine.remote_track_summary}",
            f"Muted:         {'yes' if engine.state.muted else 'no'}",
        ]
        return "\n".join(lines)

    async def format_stats(self) -> str:
        try:
            stats = await self.engine.get_transport_stats()
        except NoPartnerContextError:
            return "No active call"
        rtt = f"{stats.round_trip_time * 1000:.0f} ms" if stats.round_trip_time is not None else "-"
        return "\n".join(
            [
                f"Sent:     {stats.bytes_sent} bytes / {stats.packets_sent} packets",
                f"Received: {stats.bytes_received} bytes / {stats.packets_received} packets",
                f"Lost:     {stats.packets_lost} packets",
                f"RTT:      {rtt}",
            ]
        )

    async def handle_command(self, command: str) -> None:
        """Execute one user command.

        Args:
            command: Command word (case-insensitive, optional leading /)
        """
        command = command.strip().lower().lstrip("/")

        if command == "quit":
            self.running = False
            await self.engine.end_call()
            print("\nGoodbye!")

        elif command == "help":
            print(HELP_TEXT)

        elif command == "search":
            try:
                await self.engine.begin_search()
            except MicrophonePermissionError as e:
                print(f"\nCannot access the microphone: {e}")

        elif command == "cancel":
            await self.engine.cancel_search()

        elif command in ("mute", "unmute"):
            await self.engine.set_muted(command == "mute")

        elif command == "end":
            await self.engine.end_call()

        elif command == "stats":
            print(await self.format_stats())

        elif command == "status":
            print(self.format_status())

        else:
            print(f"Unknown command: {command}")
            print("Type help for available commands")

    async def receive_messages(self) -> None:
        """Dispatch server messages until the connection closes."""
        async for message in self.signaling.messages():
            self.dispatch(message)
        self.running = False
        print("\nDisconnected from server (press Enter to exit)")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print(f"Stranger Call ({self.signaling.connection_id})")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                self.running = False
                break

            if not self.running:
                break
            if text.strip():
                await self.handle_command(text)

    async def run(self) -> None:
        """Run the client until the user quits or the server goes away."""
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        receiver = asyncio.create_task(self.receive_messages())
        try:
            await self.input_loop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            await self.engine.end_call()
            await self.signaling.close()
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
            await self.drain()


async def run_client(config: CallerConfig) -> None:
    """Connect to the matchmaker and run the interactive client.

    Args:
        config: Client configuration
    """
    signaling = SignalingClient(config.server_url)
    await signaling.connect()

    engine = NegotiationEngine(
        signaling=signaling,
        microphone=SounddeviceMicrophone(device=config.input_device),
        peer_factory=aiortc_peer_factory(config.ice_servers),
        speaker=SounddeviceSpeaker(config.voice, device=config.output_device),
        voice_profile=config.voice,
        track_ready_timeout_s=config.track_ready_timeout_s,
        track_poll_interval_s=config.track_poll_interval_s,
    )
    await CallClient(signaling, engine).run()


def main() -> None:
    """Main entry point for the call client."""
    parser = argparse.ArgumentParser(description="Random one-to-one voice calls")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs") / "caller.yaml",
        help="Path to caller config YAML file",
    )
    parser.add_argument(
        "--server",
        type=str,
        default=None,
        help="Signaling server URL (overrides config)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    config = CallerConfig.from_yaml_with_defaults(args.config)
    if args.server:
        config = config.model_copy(update={"server_url": args.server})

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        asyncio.run(run_client(config))
    except ConnectionError as e:
        logger.error(f"Connection failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()

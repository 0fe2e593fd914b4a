"""WebSocket CLI client for exercising the gateway.

Connects to the gateway, starts a conversation, streams a 16 kHz mono WAV
file as ``audio_data`` frames and saves the tutor's spoken replies to a WAV
file.
"""

import argparse
import asyncio
import base64
import json
import logging
import sys
import time
from pathlib import Path

import numpy as np
import soundfile as sf
import websockets
from websockets.asyncio.client import ClientConnection

from gateway.transport.websocket_protocol import (
    AudioDataMessage,
    StartConversationMessage,
    StopConversationMessage,
)

logger = logging.getLogger(__name__)

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000


def load_pcm16(path: Path, sample_rate: int = INPUT_SAMPLE_RATE) -> bytes:
    """Read a WAV file as mono 16-bit little-endian PCM.

    Multi-channel input is averaged down to mono.

    Raises:
        ValueError: If the file's sample rate is not ``sample_rate``
    """
    audio, file_rate = sf.read(str(path), dtype="int16", always_2d=True)
    if file_rate != sample_rate:
        raise ValueError(f"{path} is {file_rate} Hz, expected {sample_rate} Hz")

    if audio.shape[1] > 1:
        audio = audio.mean(axis=1).astype(np.int16)
    else:
        audio = audio[:, 0]

    return audio.astype("<i2").tobytes()


def chunk_pcm(pcm: bytes, chunk_ms: int = 100, sample_rate: int = INPUT_SAMPLE_RATE) -> list[bytes]:
    """Split PCM into frames of ``chunk_ms`` milliseconds (last may be short)."""
    chunk_bytes = sample_rate * chunk_ms // 1000 * 2
    return [pcm[i : i + chunk_bytes] for i in range(0, len(pcm), chunk_bytes)]


class AudioRecorder:
    """Accumulates response audio and writes it out as WAV."""

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE) -> None:
        self.sample_rate = sample_rate
        self.chunks: list[bytes] = []

    @property
    def byte_count(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    def add(self, pcm_data: bytes) -> None:
        self.chunks.append(pcm_data)

    def save(self, path: Path) -> bool:
        """Write collected audio; returns False if there was none."""
        pcm = b"".join(self.chunks)
        if len(pcm) < 2:
            return False

        audio = np.frombuffer(pcm[: len(pcm) // 2 * 2], dtype="<i2")
        sf.write(str(path), audio, self.sample_rate, subtype="PCM_16")
        logger.info(f"Saved {len(audio) / self.sample_rate:.2f}s of audio to {path}")
        return True


class CLIClient:
    """WebSocket CLI client for gateway communication."""

    def __init__(self, server_url: str, verbose: bool = False) -> None:
        """Initialize CLI client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:8080/ws)
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.verbose = verbose
        self.session_id: str | None = None
        self.status: str | None = None
        self.statuses: list[str] = []
        self.errors: list[str] = []
        self.system_status: dict[str, object] | None = None
        self.recorder = AudioRecorder()
        self._status_changed = asyncio.Event()

    def handle_message(self, message_data: str) -> None:
        """Handle one server message.

        Args:
            message_data: Raw JSON message from server
        """
        try:
            data = json.loads(message_data)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid message from server: {e}")
            return

        msg_type = data.get("type")

        if msg_type == "conversation_status":
            self.status = data.get("status")
            self.session_id = data.get("sessionId", self.session_id)
            self.statuses.append(str(self.status))
            self._status_changed.set()
            print(f"\n[status] {self.status}")

        elif msg_type == "system_status":
            self.system_status = data
            logger.info(
                f"Sessions {data.get('activeSessions')}/{data.get('maxSessions')} "
                f"(model: {data.get('geminiModel')})"
            )

        elif msg_type == "audio_response":
            pcm_data = base64.b64decode(data.get("data", ""))
            self.recorder.add(pcm_data)
            if self.verbose:
                logger.debug(f"Received audio ({len(pcm_data)} bytes)")
            else:
                print(".", end="", flush=True)

        elif msg_type == "error":
            self.errors.append(data.get("message", ""))
            self._status_changed.set()
            print(f"\n[error] {data.get('message')}")

        else:
            logger.warning(f"Unknown message type: {msg_type}")

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Receive and handle messages until the server closes."""
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8")
                self.handle_message(message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")

    async def wait_for_status(self, *statuses: str, timeout: float = 15.0) -> bool:
        """Wait until the conversation reaches one of ``statuses``.

        Returns False on timeout or if the server reported an error first.
        """
        deadline = time.monotonic() + timeout
        error_count = len(self.errors)
        while self.status not in statuses:
            if len(self.errors) > error_count:
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._status_changed.clear()
            try:
                await asyncio.wait_for(self._status_changed.wait(), timeout=remaining)
            except TimeoutError:
                return False
        return True

    async def stream_audio(
        self, websocket: ClientConnection, frames: list[bytes], chunk_ms: int, realtime: bool
    ) -> None:
        """Send PCM frames as audio_data messages."""
        for frame in frames:
            message = AudioDataMessage(audio_data=list(frame), timestamp=time.time() * 1000)
            await websocket.send(message.model_dump_json(by_alias=True))
            if realtime:
                await asyncio.sleep(chunk_ms / 1000)
        logger.info(f"Streamed {len(frames)} frames")

    async def run(
        self,
        input_path: Path,
        output_path: Path,
        chunk_ms: int = 100,
        linger_s: float = 5.0,
        realtime: bool = True,
    ) -> int:
        """Run one conversation against the gateway.

        Returns:
            Process exit code
        """
        frames = chunk_pcm(load_pcm16(input_path), chunk_ms=chunk_ms)

        async with websockets.connect(self.server_url) as websocket:
            logger.info(f"Connected to {self.server_url}")
            receiver = asyncio.create_task(self.receive_messages(websocket))

            try:
                start = StartConversationMessage(timestamp=time.time() * 1000)
                await websocket.send(start.model_dump_json(by_alias=True))

                if not await self.wait_for_status("listening", "speaking", "thinking"):
                    print("\nConversation did not start")
                    return 1

                await self.stream_audio(websocket, frames, chunk_ms, realtime)
                await asyncio.sleep(linger_s)

                stop = StopConversationMessage(timestamp=time.time() * 1000)
                await websocket.send(stop.model_dump_json(by_alias=True))
                await self.wait_for_status("idle", timeout=10.0)
            finally:
                await websocket.close()
                await receiver

        if self.recorder.save(output_path):
            print(f"\nSaved response audio to {output_path}")
        else:
            print("\nNo response audio received")
        return 0


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(
        description="Stream a WAV file to the Portuguese tutor gateway"
    )
    parser.add_argument("input", type=Path, help="16 kHz mono WAV file to send")
    parser.add_argument(
        "--host",
        type=str,
        default="ws://localhost:8080/ws",
        help="WebSocket server URL (default: ws://localhost:8080/ws)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("tutor_response.wav"),
        help="Where to save response audio (24 kHz WAV)",
    )
    parser.add_argument("--chunk-ms", type=int, default=100, help="Frame size in ms")
    parser.add_argument(
        "--linger", type=float, default=5.0, help="Seconds to wait for replies after sending"
    )
    parser.add_argument(
        "--fast", action="store_true", help="Send frames without real-time pacing"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    client = CLIClient(args.host, verbose=args.verbose)
    try:
        exit_code = asyncio.run(
            client.run(
                args.input,
                args.output,
                chunk_ms=args.chunk_ms,
                linger_s=args.linger,
                realtime=not args.fast,
            )
        )
    except KeyboardInterrupt:
        print("\nExiting...")
        exit_code = 0
    except (OSError, ValueError) as e:
        logger.error(f"Client error: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

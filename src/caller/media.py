"""Local microphone capture and remote audio playback.

Capture runs on the PortAudio callback thread and hands PCM blocks to the
event loop with ``call_soon_threadsafe``; aiortc pulls them as ``av``
frames through ``MicrophoneTrack.recv``. Muting swaps captured audio for
silence so the track, and therefore the negotiated session, stays intact.
"""

import asyncio
import logging
import queue
from abc import ABC, abstractmethod
from fractions import Fraction
from typing import Any

import av
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from caller.config import VoiceProfile
from caller.errors import MicrophonePermissionError

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # s16
MAX_QUEUED_BLOCKS = 50


class MicrophoneTrack(MediaStreamTrack):
    """Audio track fed with raw PCM blocks from the capture thread."""

    kind = "audio"

    def __init__(self, profile: VoiceProfile) -> None:
        super().__init__()
        self.profile = profile
        self.enabled = True
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=MAX_QUEUED_BLOCKS)
        self._ready = False
        self._pts = 0
        self._time_base = Fraction(1, profile.sample_rate)

    @property
    def ready(self) -> bool:
        """True once the first captured block arrived."""
        return self._ready

    def push(self, pcm: bytes) -> None:
        """Queue a captured PCM block. Safe to call from any thread."""
        self._loop.call_soon_threadsafe(self._enqueue, pcm)

    def _enqueue(self, pcm: bytes) -> None:
        if self._queue.full():
            # Keep latency bounded: drop the oldest block.
            self._queue.get_nowait()
        self._queue.put_nowait(pcm)
        self._ready = True

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        pcm = await self._queue.get()
        if not self.enabled:
            pcm = bytes(len(pcm))

        samples = len(pcm) // (SAMPLE_WIDTH * self.profile.channels)
        layout = "mono" if self.profile.channels == 1 else "stereo"
        frame = av.AudioFrame(format="s16", layout=layout, samples=samples)
        frame.sample_rate = self.profile.sample_rate
        frame.pts = self._pts
        frame.time_base = self._time_base
        frame.planes[0].update(pcm)
        self._pts += samples
        return frame


class LocalMedia:
    """Acquired local audio: the outgoing track plus its capture stream.

    ``stop`` releases both and is idempotent.
    """

    def __init__(self, track: MediaStreamTrack, stream: Any = None) -> None:
        self.audio_track = track
        self._stream = stream
        self._stopped = False

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [self.audio_track]

    @property
    def ready(self) -> bool:
        """Whether the audio track is live and already producing audio."""
        return (
            not self._stopped
            and self.audio_track.readyState == "live"
            and bool(getattr(self.audio_track, "ready", True))
        )

    @property
    def stopped(self) -> bool:
        return self._stopped

    def set_enabled(self, enabled: bool) -> None:
        self.audio_track.enabled = enabled

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
        self.audio_track.stop()
        logger.info("Local audio released")


class MicrophoneSource(ABC):
    """Grants access to the local microphone."""

    @abstractmethod
    async def acquire(self, profile: VoiceProfile) -> LocalMedia:
        """Open the microphone with the given voice profile.

        Raises:
            MicrophonePermissionError: If the device is unavailable or denied
        """


class SounddeviceMicrophone(MicrophoneSource):
    """PortAudio microphone via sounddevice."""

    def __init__(self, device: int | str | None = None) -> None:
        self.device = device

    async def acquire(self, profile: VoiceProfile) -> LocalMedia:
        track = MicrophoneTrack(profile)

        def callback(indata: Any, frames: int, time_info: Any, status: Any) -> None:
            if status:
                logger.debug("Capture status", extra={"status": str(status)})
            track.push(bytes(indata))

        # PortAudio exposes no echo cancellation / noise suppression / AGC;
        # the flags are carried for peers and platforms that honour them.
        logger.debug(
            "Opening microphone",
            extra={
                "echo_cancellation": profile.echo_cancellation,
                "noise_suppression": profile.noise_suppression,
                "auto_gain_control": profile.auto_gain_control,
            },
        )
        try:
            import sounddevice as sd
        except OSError as e:
            track.stop()
            raise MicrophonePermissionError(f"PortAudio unavailable: {e}") from e

        try:
            stream = sd.RawInputStream(
                samplerate=profile.sample_rate,
                channels=profile.channels,
                dtype="int16",
                blocksize=profile.frame_samples,
                device=self.device,
                callback=callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            # ValueError: no device matches the configured input_device
            track.stop()
            raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e

        logger.info("Microphone opened", extra={"sample_rate": profile.sample_rate})
        return LocalMedia(track, stream)


class AudioSink(ABC):
    """Rendering surface for the partner's audio."""

    @abstractmethod
    async def attach(self, track: MediaStreamTrack) -> None:
        """Start playing a remote track, replacing any previous one."""

    @abstractmethod
    async def detach(self) -> None:
        """Stop playback. Safe to call when nothing is attached."""


class SounddeviceSpeaker(AudioSink):
    """Plays a remote track through the default output device."""

    def __init__(self, profile: VoiceProfile, device: int | str | None = None) -> None:
        self.profile = profile
        self.device = device
        self._blocks: queue.Queue[bytes] = queue.Queue(maxsize=MAX_QUEUED_BLOCKS * 4)
        self._pending = b""
        self._stream: Any = None
        self._pump_task: asyncio.Task[None] | None = None

    def _callback(self, outdata: Any, frames: int, time_info: Any, status: Any) -> None:
        need = frames * SAMPLE_WIDTH * self.profile.channels
        data = self._pending
        while len(data) < need:
            try:
                data += self._blocks.get_nowait()
            except queue.Empty:
                break
        if len(data) < need:
            data += bytes(need - len(data))
        outdata[:] = data[:need]
        self._pending = data[need:]

    async def attach(self, track: MediaStreamTrack) -> None:
        await self.detach()

        import sounddevice as sd

        self._stream = sd.RawOutputStream(
            samplerate=self.profile.sample_rate,
            channels=self.profile.channels,
            dtype="int16",
            blocksize=self.profile.frame_samples,
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()
        self._pump_task = asyncio.create_task(self._pump(track))
        logger.info("Remote audio playback started")

    async def _pump(self, track: MediaStreamTrack) -> None:
        layout = "mono" if self.profile.channels == 1 else "stereo"
        resampler = av.AudioResampler(format="s16", layout=layout, rate=self.profile.sample_rate)
        try:
            while True:
                frame = await track.recv()
                for out in resampler.resample(frame):
                    pcm = bytes(out.planes[0])[: out.samples * SAMPLE_WIDTH * self.profile.channels]
                    try:
                        self._blocks.put_nowait(pcm)
                    except queue.Full:
                        logger.debug("Playback buffer full, dropping audio block")
        except MediaStreamError:
            logger.info("Remote track ended")

    async def detach(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            logger.info("Remote audio playback stopped")

        self._pending = b""
        while not self._blocks.empty():
            self._blocks.get_nowait()

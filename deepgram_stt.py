"""Deepgram streaming STT adapter for the overlay session.

Maps Deepgram live-transcription messages onto the session's inbound
interface:
- Results (interim or final)   -> TranscriptSegment(text, is_final)
- SpeechStarted                -> VoiceActivityFrame(voice-started)
- UtteranceEnd                 -> VoiceActivityFrame(voice-stopped)

The caller pushes PCM with send_audio() from any thread. The SDK fires its
callbacks on its own socket thread; they are handed to the session loop
with call_soon_threadsafe. Deepgram drops a socket after 10 s without
data, so idle periods are filled with KeepAlive. A dropped or refused
connection is retried with exponential backoff until MAX_RECONNECT_ATTEMPTS.

Audio format: 16kHz 16-bit mono PCM (linear16) by default.
"""

import asyncio
import logging
import os
import time

from deepgram import DeepgramClient
from deepgram.core.events import EventType
from deepgram.extensions.types.sockets.listen_v1_control_message import (
    ListenV1ControlMessage,
)

from pipeline_frames import VoiceActivity, VoiceActivityFrame
from transcript_buffer import TranscriptSegment

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
AUDIO_QUEUE_SIZE = 200
QUEUE_POLL_SECONDS = 0.25

KEEPALIVE_INTERVAL = 5.0
RECONNECT_DELAY_BASE = 1.0
RECONNECT_MAX_DELAY = 30.0
MAX_RECONNECT_ATTEMPTS = 10
UTTERANCE_END_MS = 1000


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before reconnect ``attempt`` (1-based)."""
    return min(RECONNECT_DELAY_BASE * 2 ** (attempt - 1), RECONNECT_MAX_DELAY)


class DeepgramSTT:
    """Deepgram Nova-3 streaming STT producing segments and VAD signals.

    Args:
        api_key: Deepgram API key (defaults to $DEEPGRAM_API_KEY)
        on_segment: callback(TranscriptSegment) for interim and final results
        on_voice_activity: callback(VoiceActivityFrame) for VAD events
        on_unavailable: callback() once reconnecting has been given up
        loop: event loop to run callbacks on (None = call inline)
        sample_rate: PCM sample rate of the audio passed to send_audio()
        language: Deepgram language code
    """

    def __init__(self, api_key=None, on_segment=None, on_voice_activity=None,
                 on_unavailable=None, loop=None, sample_rate=SAMPLE_RATE,
                 language="en"):
        self._api_key = api_key or os.environ.get("DEEPGRAM_API_KEY")
        self._on_segment = on_segment
        self._on_voice_activity = on_voice_activity
        self._on_unavailable = on_unavailable
        self._loop = loop
        self._sample_rate = sample_rate
        self._language = language

        self._running = False
        self._connected = False
        self._failures = 0
        self._audio_q = asyncio.Queue(maxsize=AUDIO_QUEUE_SIZE)

        self._counts = {"final": 0, "interim": 0, "dropped": 0}

    @property
    def running(self):
        return self._running

    @property
    def stats(self):
        return {
            'final_count': self._counts["final"],
            'interim_count': self._counts["interim"],
            'dropped_audio': self._counts["dropped"],
            'connected': self._connected,
            'reconnect_attempts': self._failures,
        }

    async def start(self):
        """Stream until stop() or until reconnecting is given up."""
        self._running = True
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        logger.info("DeepgramSTT started")
        try:
            await self._run()
        finally:
            self._running = False
            self._connected = False
            logger.info("DeepgramSTT stopped")

    def stop(self):
        self._running = False

    def send_audio(self, audio_data: bytes):
        """Queue a PCM chunk for Deepgram. Safe to call from any thread."""
        if self._loop is None:
            self._enqueue(audio_data)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, audio_data)

    def _enqueue(self, audio_data):
        try:
            self._audio_q.put_nowait(audio_data)
        except asyncio.QueueFull:
            self._counts["dropped"] += 1

    # ── Connection ───────────────────────────────────────────────

    async def _run(self):
        while self._running:
            try:
                await self._session()
            except Exception as e:
                self._connected = False
                if not self._running:
                    break
                self._failures += 1
                if self._failures >= MAX_RECONNECT_ATTEMPTS:
                    logger.error("Deepgram unavailable after %d attempts: %s", self._failures, e)
                    if self._on_unavailable:
                        self._on_unavailable()
                    break
                delay = backoff_delay(self._failures)
                logger.warning("Deepgram connection lost (%s), retry %d in %.1fs",
                               e, self._failures, delay)
                await asyncio.sleep(delay)

    def _connect_options(self):
        return dict(
            model="nova-3",
            encoding="linear16",
            sample_rate=str(self._sample_rate),
            channels="1",
            language=self._language,
            interim_results="true",
            vad_events="true",
            utterance_end_ms=str(UTTERANCE_END_MS),
            endpointing="300",
            smart_format="true",
            punctuate="true",
        )

    async def _session(self):
        """One socket lifetime: connect, stream audio, finalize on the way out."""
        client = DeepgramClient(api_key=self._api_key)
        with client.listen.v1.connect(**self._connect_options()) as socket:
            socket.on(EventType.MESSAGE, self._on_message)
            socket.on(EventType.CLOSE, self._on_close)
            socket.on(EventType.ERROR, self._on_error)
            socket.start_listening()

            self._connected = True
            self._failures = 0
            logger.info("Connected to Deepgram Nova-3")
            try:
                await self._pump(socket)
            finally:
                self._connected = False
                try:
                    socket.send_control(ListenV1ControlMessage(type="Finalize"))
                except Exception as e:
                    logger.debug("Deepgram finalize skipped: %s", e)

    async def _pump(self, socket):
        """Forward queued audio; KeepAlive after KEEPALIVE_INTERVAL of silence.

        Send failures propagate so the caller reconnects.
        """
        last_sent = time.monotonic()
        while self._running:
            if not self._connected:
                raise ConnectionError("socket closed by Deepgram")
            try:
                chunk = await asyncio.wait_for(self._audio_q.get(), QUEUE_POLL_SECONDS)
            except asyncio.TimeoutError:
                if time.monotonic() - last_sent >= KEEPALIVE_INTERVAL:
                    socket.send_control(ListenV1ControlMessage(type="KeepAlive"))
                    last_sent = time.monotonic()
                continue
            socket.send_media(chunk)
            last_sent = time.monotonic()

    # ── SDK callbacks (socket thread) ────────────────────────────

    def _on_message(self, message, *args, **kwargs):
        try:
            kind = getattr(message, 'type', 'Results')
            if kind == "Results":
                self._handle_results(message)
            elif kind == "SpeechStarted":
                self._dispatch(self._on_voice_activity,
                               VoiceActivityFrame(VoiceActivity.STARTED))
            elif kind == "UtteranceEnd":
                self._dispatch(self._on_voice_activity,
                               VoiceActivityFrame(VoiceActivity.STOPPED))
        except Exception as e:
            logger.error("Failed to handle Deepgram %s message: %s",
                         getattr(message, 'type', '?'), e)

    def _handle_results(self, result):
        alternatives = result.channel.alternatives
        text = alternatives[0].transcript.strip() if alternatives else ""
        if not text:
            return
        is_final = bool(getattr(result, 'is_final', False))
        self._counts["final" if is_final else "interim"] += 1
        if is_final:
            logger.debug("STT final: %s", text)
        self._dispatch(self._on_segment, TranscriptSegment(text=text, is_final=is_final))

    def _on_close(self, *args, **kwargs):
        logger.info("Deepgram socket closed")
        self._connected = False

    def _on_error(self, error, *args, **kwargs):
        logger.warning("Deepgram error: %s", error)

    def _dispatch(self, callback, item):
        if callback is None:
            return
        if self._loop is None:
            callback(item)
        else:
            self._loop.call_soon_threadsafe(callback, item)

"""
AI provider race: answers each fired trigger with several providers at once.

Listens for ``trigger_fired`` on the session bus, sends the question to
every configured provider concurrently (OpenAI-compatible chat completion
streams), and feeds the resulting stream events back into the session.
The first provider to produce a chunk wins the race; the others are
cancelled. The session's arbiter still checks every event, so a late
chunk from a cancelled provider can never reach the sink.

Providers are reached through the ``openai`` async client; Gemini and
Cerebras both expose OpenAI-compatible endpoints via ``base_url``.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from event_bus import BusEvent, EventType
from pipeline_frames import ChunkFrame, CompleteFrame, ErrorFrame, FirstChunkFrame

logger = logging.getLogger(__name__)

MAX_HISTORY_TURNS = 10  # user + assistant pairs kept as model context
MAX_PROFILE_CHARS = 30


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    model: str
    base_url: str | None = None
    api_key_env: str = "OPENAI_API_KEY"


DEFAULT_PROVIDERS = (
    ProviderConfig("gemini", "gemini-2.0-flash",
                   base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
                   api_key_env="GEMINI_API_KEY"),
    ProviderConfig("cerebras", "llama3.1-8b",
                   base_url="https://api.cerebras.ai/v1",
                   api_key_env="CEREBRAS_API_KEY"),
)


def build_system_prompt(job_role: str, key_skills: str) -> str:
    return (
        "You are assisting a candidate during a live technical interview.\n"
        f"Job role: {job_role or 'software engineer'}\n"
        f"Key skills: {key_skills or 'general programming'}\n\n"
        "The user message is a speech transcript and may contain filler words, "
        "repetitions and transcription errors. Extract the interviewer's question "
        "and answer it directly.\n"
        "- Behavioral or conceptual questions: up to 5 concise bullet points.\n"
        "- Coding questions: one complete, runnable solution in a fenced Markdown "
        "code block with the language named, commented at each import and function.\n"
        "Reply with the answer only: no preamble, no restating the question."
    )


class OpenAIStreamer:
    """Streams chat completion deltas from an OpenAI-compatible endpoint."""

    def __init__(self):
        self._clients = {}

    def _client(self, provider: ProviderConfig):
        from openai import AsyncOpenAI

        client = self._clients.get(provider.name)
        if client is None:
            client = AsyncOpenAI(api_key=os.environ.get(provider.api_key_env),
                                 base_url=provider.base_url)
            self._clients[provider.name] = client
        return client

    async def __call__(self, provider: ProviderConfig, messages: list[dict]) -> AsyncIterator[str]:
        stream = await self._client(provider).chat.completions.create(
            model=provider.model, messages=messages, stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


class AIRace:
    """Dispatcher that races providers for every trigger the session fires.

    Args:
        session: OverlaySession to attach to
        providers: ProviderConfig list, raced in parallel
        job_role, key_skills: candidate profile for the system prompt
        stream_fn: async-generator factory(provider, messages) -> text deltas;
            defaults to the OpenAI-compatible streamer
        max_history_turns: completed Q/A pairs kept as conversation context
    """

    def __init__(self, session, providers=DEFAULT_PROVIDERS, job_role: str = "",
                 key_skills: str = "",
                 stream_fn: Callable[[ProviderConfig, list[dict]], AsyncIterator[str]] | None = None,
                 max_history_turns: int = MAX_HISTORY_TURNS):
        if not providers:
            raise ValueError("AIRace needs at least one provider")
        self._session = session
        self.providers = tuple(providers)
        self.job_role = job_role[:MAX_PROFILE_CHARS]
        self.key_skills = key_skills[:MAX_PROFILE_CHARS]
        self._stream_fn = stream_fn or OpenAIStreamer()
        self._max_history_turns = max_history_turns
        self.conversation_history: list[dict] = []
        self._race_seq = 0
        self._tasks: set[asyncio.Task] = set()

    # ── Wiring ───────────────────────────────────────────────────

    def attach(self):
        bus = self._session.bus
        bus.on(EventType.TRIGGER_FIRED, self._on_trigger)
        bus.on(EventType.SESSION_CLEARED, self._on_cleared)

    def detach(self):
        bus = self._session.bus
        bus.off(EventType.TRIGGER_FIRED, self._on_trigger)
        bus.off(EventType.SESSION_CLEARED, self._on_cleared)
        self.cancel_all()

    def _on_trigger(self, evt: BusEvent):
        text = evt.payload.get("text", "")
        task = asyncio.get_running_loop().create_task(self.race(text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_cleared(self, evt: BusEvent):
        self.cancel_all()
        self.conversation_history.clear()
        logger.info("Conversation history cleared")

    def cancel_all(self):
        for task in list(self._tasks):
            task.cancel()

    # ── Race ─────────────────────────────────────────────────────

    def build_messages(self, question: str) -> list[dict]:
        return [
            {"role": "system", "content": build_system_prompt(self.job_role, self.key_skills)},
            *self.conversation_history,
            {"role": "user", "content": question.strip()},
        ]

    async def race(self, question: str):
        """Race every provider on one question and feed events to the session."""
        self._race_seq += 1
        race_id = str(self._race_seq)
        gen = self._session.bus.generation
        messages = self.build_messages(question)
        loop = asyncio.get_running_loop()
        started = loop.time()

        state = {"winner": None, "errors": 0}
        tasks: dict[str, asyncio.Task] = {}

        def deliver(frame):
            # Frames from before a clear belong to a discarded session
            if self._session.bus.generation == gen:
                self._session.handle(frame)

        async def run(provider: ProviderConfig):
            response_id = f"{race_id}-{provider.name}"
            parts = []
            try:
                async for delta in self._stream_fn(provider, messages):
                    if state["winner"] is None:
                        state["winner"] = provider.name
                        logger.info("%s won race %s in %.0fms", provider.name, race_id,
                                    (loop.time() - started) * 1000)
                        for name, other in tasks.items():
                            if name != provider.name:
                                other.cancel()
                        deliver(FirstChunkFrame(response_id=response_id, content=delta))
                    elif state["winner"] != provider.name:
                        return
                    else:
                        deliver(ChunkFrame(response_id=response_id, content=delta))
                    parts.append(delta)
            except Exception as e:
                state["errors"] += 1
                logger.warning("%s failed on race %s: %s", provider.name, race_id, e)
                if state["winner"] == provider.name:
                    deliver(ErrorFrame(response_id=response_id, message=str(e)))
                elif state["winner"] is None and state["errors"] == len(self.providers):
                    deliver(ErrorFrame(response_id=race_id, message=str(e)))
                return

            if state["winner"] == provider.name:
                deliver(CompleteFrame(response_id=response_id))
                self._remember(question, "".join(parts))
            elif state["winner"] is None:
                # Stream ended without a single delta
                state["errors"] += 1
                if state["errors"] == len(self.providers):
                    deliver(ErrorFrame(response_id=race_id, message="empty response"))

        for provider in self.providers:
            tasks[provider.name] = loop.create_task(run(provider))
        try:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise

    def _remember(self, question: str, answer: str):
        self.conversation_history.append({"role": "user", "content": question.strip()})
        self.conversation_history.append({"role": "assistant", "content": answer})
        limit = self._max_history_turns * 2
        if len(self.conversation_history) > limit:
            self.conversation_history = self.conversation_history[-limit:]
            logger.debug("Conversation history trimmed to %d turns", self._max_history_turns)

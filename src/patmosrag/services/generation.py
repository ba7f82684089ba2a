"""Streaming generation backends for PatmosRAG."""

from __future__ import annotations

import logging
import queue
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Protocol, Sequence

from patmosrag.errors import GenerationError
from patmosrag.models import MergedResult

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "Every answer must be built only from the documents provided; never bring in outside knowledge. "
    "If the question spans several documents, combine their insights into one unified response. "
    "Use a warm, conversational tone. Do not cite sources, they are shown separately. "
    "Only say \"I don't have information about that in the available documents\" when the subject "
    "is absent from every document."
)

_TOKEN = re.compile(r"\S+\s*")


def count_tokens(text: str) -> int:
    """Whitespace token estimate used for prompt/completion accounting."""

    return len(text.split())


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None
    stream_timeout_seconds: float = 60.0


class TokenStreamer(Protocol):
    """Iterable of decoded text fed by a generation thread."""

    def __iter__(self) -> Iterator[str]: ...

    def end(self) -> None: ...


class GenerationBackend(Protocol):
    """Protocol describing streaming generation behaviour."""

    def stream(self, *, question: str, context: str, citations: Sequence[MergedResult]) -> Iterator[str]:
        """Yield answer text incrementally; exhausting the iterator means completion."""


class TemplateGenerator:
    """Deterministic generator used for tests and offline environments."""

    def stream(self, *, question: str, context: str, citations: Sequence[MergedResult]) -> Iterator[str]:
        yield from _TOKEN.findall(self.render(question=question, citations=citations))

    @staticmethod
    def render(*, question: str, citations: Sequence[MergedResult]) -> str:
        if not citations or citations[0].chunk is None:
            return "I couldn't find any relevant information in the available documents to answer that question."
        best = citations[0].chunk
        titles = []
        for result in citations:
            if result.chunk and result.chunk.document.title not in titles:
                titles.append(result.chunk.document.title)
        return (
            f"Based on the available documents, here is the best match for '{question.strip()}': "
            f"{best.text} (drawn from {', '.join(titles)})"
        )


class QwenGenerator:
    """Generator that optionally streams from Qwen models via Transformers."""

    def __init__(self, config: GenerationConfig | None = None, fallback: GenerationBackend | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateGenerator()
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            LOGGER.info("QwenGenerator running in template-only mode.")
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
            self._model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
                self._model.config.pad_token_id = self._tokenizer.pad_token_id
            if self._config.device:
                self._model.to(self._config.device)
            LOGGER.info("Loaded generation model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - optional model download/runtime
            LOGGER.warning("Falling back to template generator: %s", exc)
            self._tokenizer = None
            self._model = None

    def stream(self, *, question: str, context: str, citations: Sequence[MergedResult]) -> Iterator[str]:
        if self._tokenizer is None or self._model is None:
            yield from self._fallback.stream(question=question, context=context, citations=citations)
            return
        import torch
        from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

        prompt = self._tokenizer.apply_chat_template(
            build_messages(question=question, context=context),
            tokenize=False,
            add_generation_prompt=True,
        )
        tokenized = self._tokenizer(prompt, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        streamer = TextIteratorStreamer(
            self._tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
            timeout=self._config.stream_timeout_seconds,
        )

        class _StopOnEvent(StoppingCriteria):
            def __init__(self, event: threading.Event) -> None:
                self._event = event

            def __call__(self, input_ids, scores, **kwargs):
                batch = input_ids.shape[0]
                return torch.full((batch,), self._event.is_set(), dtype=torch.bool, device=input_ids.device)

        def _generate(stop: threading.Event) -> None:
            self._model.generate(
                input_ids,
                attention_mask=attention_mask,
                max_new_tokens=self._config.max_new_tokens,
                temperature=self._config.temperature,
                do_sample=self._config.temperature > 0,
                streamer=streamer,
                stopping_criteria=StoppingCriteriaList([_StopOnEvent(stop)]),
            )

        yield from stream_from_worker(_generate, streamer, join_timeout=self._config.stream_timeout_seconds)


def stream_from_worker(
    generate: Callable[[threading.Event], None],
    streamer: TokenStreamer,
    *,
    join_timeout: float = 60.0,
) -> Iterator[str]:
    """Run ``generate`` on a worker thread and yield the text it pushes into ``streamer``.

    The stop event handed to ``generate`` is set as soon as the consumer stops
    iterating, so an abandoned stream halts the model instead of running to
    ``max_new_tokens``.
    """

    stop = threading.Event()
    errors: list[Exception] = []

    def _run() -> None:
        try:
            generate(stop)
        except Exception as exc:  # surfaced to the consumer below
            errors.append(exc)
            streamer.end()

    worker = threading.Thread(target=_run, name="qwen-generate", daemon=True)
    worker.start()
    try:
        for text in streamer:
            if text:
                yield text
    except queue.Empty as exc:
        raise GenerationError("Timed out waiting for the next token") from exc
    finally:
        stop.set()
        worker.join(timeout=join_timeout)
    if errors:
        raise GenerationError(f"Generation failed: {errors[0]}") from errors[0]


def build_messages(*, question: str, context: str) -> list[dict[str, str]]:
    system_context = SYSTEM_PROMPT
    if context:
        system_context += f"\n\nAvailable documents:\n{context}"
    return [
        {"role": "system", "content": system_context},
        {"role": "user", "content": question},
    ]

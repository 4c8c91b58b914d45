"""OpenAI-compatible embeddings providers (OpenAI, SiliconFlow)."""

from __future__ import annotations

import asyncio
import os
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from chatsync.core.logging import Logger
from chatsync.modules.embeddings.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
)

from . import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderInitContext,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "ProviderProfile",
    "OPENAI_PROFILE",
    "SILICONFLOW_PROFILE",
    "openai_provider_factory",
    "siliconflow_provider_factory",
]

_DEFAULT_TIMEOUT = 30.0
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2
_MAX_ATTEMPTS = 5
_DEFAULT_PARALLEL_REQUESTS = 4


@dataclass(frozen=True, slots=True)
class _ModelMetadata:
    dim: int | None
    max_batch_size: int


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    """Endpoint defaults for an OpenAI-compatible embeddings service."""

    name: str
    api_key_env: str
    base_url: str | None
    default_max_batch_size: int
    models: Mapping[str, _ModelMetadata]


OPENAI_PROFILE = ProviderProfile(
    name="openai",
    api_key_env="OPENAI_API_KEY",
    base_url=None,
    default_max_batch_size=128,
    models={
        "text-embedding-3-small": _ModelMetadata(dim=1_536, max_batch_size=128),
        "text-embedding-3-large": _ModelMetadata(dim=3_072, max_batch_size=64),
        "text-embedding-ada-002": _ModelMetadata(dim=1_536, max_batch_size=128),
    },
)

# SiliconFlow rejects requests carrying more than 32 inputs.
SILICONFLOW_PROFILE = ProviderProfile(
    name="siliconflow",
    api_key_env="SILICONFLOW_API_KEY",
    base_url="https://api.siliconflow.cn/v1",
    default_max_batch_size=32,
    models={
        "BAAI/bge-m3": _ModelMetadata(dim=1_024, max_batch_size=32),
        "BAAI/bge-large-zh-v1.5": _ModelMetadata(dim=1_024, max_batch_size=32),
        "netease-youdao/bce-embedding-base_v1": _ModelMetadata(
            dim=768,
            max_batch_size=32,
        ),
    },
)


def _normalize_model_name(model: str) -> str:
    normalized = model.strip()
    if not normalized:
        raise ValueError("model cannot be blank")
    return normalized


def _resolve_timeout(config: Mapping[str, object]) -> float:
    candidate = config.get("timeout")
    if candidate is None:
        return _DEFAULT_TIMEOUT
    try:
        parsed = float(candidate)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError("embedding timeout must be a number") from exc
    if parsed <= 0:
        raise ValueError("embedding timeout must be positive")
    return parsed


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts through an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        *,
        logger: Logger,
        profile: ProviderProfile = OPENAI_PROFILE,
        config: Mapping[str, object] | None = None,
        client: AsyncOpenAI | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.logger = logger
        self.profile = profile
        self.name = profile.name
        self._config = dict(config or {})
        self._sleep = sleep
        self._now = now
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._client = client or self._build_client()

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        return dict(self._stats)

    # ------------------------------------------------------------------#
    # Provider interface
    # ------------------------------------------------------------------#
    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        if model is None:
            return EmbeddingProviderCaps(
                max_batch_size=self.profile.default_max_batch_size,
                max_parallel_requests=_DEFAULT_PARALLEL_REQUESTS,
            )

        metadata = self.profile.models.get(_normalize_model_name(model))
        if metadata is None:
            return EmbeddingProviderCaps(
                max_batch_size=self.profile.default_max_batch_size,
                max_parallel_requests=_DEFAULT_PARALLEL_REQUESTS,
            )
        return EmbeddingProviderCaps(
            max_batch_size=metadata.max_batch_size,
            max_parallel_requests=_DEFAULT_PARALLEL_REQUESTS,
            dim=metadata.dim,
        )

    async def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()

        name = _normalize_model_name(model)
        caps = self.capabilities(model=name)
        limit = min(options.max_batch_size, caps.max_batch_size)

        results: list[EmbeddingVector] = []
        for start in range(0, len(texts), limit):
            batch = [self._normalize_text(text) for text in texts[start : start + limit]]
            embeddings = await self._invoke_with_retries(
                model=name,
                batch=batch,
                timeout=options.timeout,
            )
            self._check_dimensions(embeddings, model=name, expected=caps.dim)
            results.extend(
                tuple(float(value) for value in vector) for vector in embeddings
            )
        return tuple(results)

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _build_client(self) -> AsyncOpenAI:
        key_env = str(self._config.get("api_key_env") or self.profile.api_key_env)
        api_key = os.environ.get(key_env)
        if not api_key:
            raise EmbeddingProviderConfigurationError(
                f"{key_env} must be set to use the {self.name} provider.",
                provider=self.name,
                model="*",
            )
        base_url = self._config.get("base_url") or self.profile.base_url
        return AsyncOpenAI(
            api_key=api_key,
            base_url=str(base_url) if base_url else None,
            timeout=_resolve_timeout(self._config),
            max_retries=0,
        )

    @staticmethod
    def _normalize_text(text: str) -> str:
        return text.replace("\r\n", "\n").replace("\r", "\n").strip()

    def _check_dimensions(
        self,
        embeddings: Sequence[Sequence[float]],
        *,
        model: str,
        expected: int | None,
    ) -> None:
        for vector in embeddings:
            reference = expected if expected is not None else len(embeddings[0])
            if len(vector) != reference:
                raise EmbeddingProviderDimMismatchError(
                    f"Embedding dimension mismatch in {self.name} response.",
                    provider=self.name,
                    model=model,
                    expected=reference,
                    actual=len(vector),
                )

    async def _invoke_with_retries(
        self,
        *,
        model: str,
        batch: Sequence[str],
        timeout: float | None,
    ) -> list[list[float]]:
        attempts = 0
        jitter_source = random.Random()
        request_kwargs: dict[str, object] = {"model": model, "input": list(batch)}
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        while attempts < _MAX_ATTEMPTS:
            attempts += 1
            start = self._now()
            try:
                response = await self._client.embeddings.create(**request_kwargs)
            except Exception as exc:  # pragma: no branch - classified below
                status, request_id = self._extract_context(exc)
                should_retry = self._is_retryable(exc) and attempts < _MAX_ATTEMPTS
                if not should_retry:
                    self._stats["failures"] += 1
                    raise self._translate_exception(
                        exc,
                        attempts=attempts,
                        model=model,
                        status=status,
                        request_id=request_id,
                    ) from exc

                delay = self._compute_backoff(attempt=attempts, rng=jitter_source)
                self.logger.warning(
                    "embed-request-retry",
                    provider=self.name,
                    model=model,
                    attempt=attempts,
                    max_attempts=_MAX_ATTEMPTS,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                )
                self._stats["retries"] += 1
                await self._sleep(delay)
                continue

            self._stats["requests"] += 1
            data = sorted(
                response.data,
                key=lambda item: getattr(item, "index", 0),
            )
            self.logger.debug(
                "embed-request",
                provider=self.name,
                model=model,
                batch_size=len(batch),
                latency=self._now() - start,
                attempts=attempts,
                recovered=attempts > 1,
            )
            return [list(item.embedding) for item in data]

        raise EmbeddingProviderRetryExceededError(
            "Failed to embed texts after multiple attempts.",
            provider=self.name,
            model=model,
            attempts=attempts,
        )

    @staticmethod
    def _compute_backoff(*, attempt: int, rng: random.Random) -> float:
        base = _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 1))
        base = min(base, _BACKOFF_CAP)
        jitter = 1.0 + rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(base * jitter, 2)

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            return exc.status_code >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None
        value = getattr(exc, "status_code", None)
        if isinstance(value, int):
            status = value
        candidate = getattr(exc, "request_id", None)
        if isinstance(candidate, str):
            request_id = candidate
        return status, request_id

    def _translate_exception(
        self,
        exc: Exception,
        *,
        attempts: int,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingProviderError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": self.name,
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if isinstance(exc, EmbeddingProviderError):
            return exc
        if isinstance(exc, RateLimitError):
            return EmbeddingProviderRateLimitError(message, **context)
        if self._is_retryable(exc):
            if attempts >= _MAX_ATTEMPTS:
                return EmbeddingProviderRetryExceededError(
                    f"Exceeded retry attempts calling {self.name}: {message}",
                    attempts=attempts,
                    **context,
                )
            return EmbeddingProviderRetryableError(message, **context)
        return EmbeddingProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered under ``openai``."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        profile=OPENAI_PROFILE,
        config=context.config,
    )


def siliconflow_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered under ``siliconflow``."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        profile=SILICONFLOW_PROFILE,
        config=context.config,
    )

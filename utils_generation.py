import json
import re
import time
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Optional

from groq import Groq, APIStatusError, APITimeoutError, APIConnectionError
from pydantic import ValidationError

import config_master as config
from schemas import AnalysisSource, ErrorKind, PairedResult
from utils_logger import get_logger
from utils_uploads import encode_image, to_data_url

log = get_logger(__name__)

# Wire names of one side's finding, in the order the prompt lists them.
FINDING_FIELDS = (
    "toothPosition", "fdiCode", "minDistance", "contactRelationship",
    "relativePosition", "riskScore", "injuryProbability", "highRiskSigns",
    "recommendation",
)
POLL_INTERVAL_SECONDS = 0.25

_EXECUTOR = ThreadPoolExecutor(max_workers=config.ANALYSIS_WORKERS, thread_name_prefix="analysis")


class AnalysisError(Exception):
    """A remote analysis attempt that produced no usable PairedResult."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


@dataclass(frozen=True)
class AnalysisOutcome:
    """Either a real model result or the demonstration fallback, tagged with why."""
    result: PairedResult
    source: AnalysisSource
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, result: PairedResult) -> "AnalysisOutcome":
        return cls(result=result, source=AnalysisSource.MODEL)

    @classmethod
    def failure(cls, kind: ErrorKind) -> "AnalysisOutcome":
        return cls(result=fallback_paired_result(), source=AnalysisSource.FALLBACK, error_kind=kind)

    @property
    def is_fallback(self) -> bool:
        return self.source is AnalysisSource.FALLBACK


def fallback_paired_result() -> PairedResult:
    return PairedResult.model_validate(config.FALLBACK_RESULTS)


# Prompt / schema

def build_analysis_prompt(language: str = config.DEFAULT_LANGUAGE) -> str:
    language_name = config.LANGUAGE_NAMES.get(language, config.LANGUAGE_NAMES['EN'])
    return config.ANALYSIS_PROMPT.strip().replace("{language_name}", language_name)


def _finding_schema() -> dict:
    properties = {name: {"type": "string"} for name in FINDING_FIELDS}
    properties["highRiskSigns"] = {"type": "array", "items": {"type": "string"}}
    return {
        "type": "object",
        "properties": properties,
        "required": list(FINDING_FIELDS),
        "additionalProperties": False,
    }


def build_response_schema() -> dict:
    """JSON schema for the reply: one finding object per side, both required."""
    return {
        "type": "object",
        "properties": {"left": _finding_schema(), "right": _finding_schema()},
        "required": ["left", "right"],
        "additionalProperties": False,
    }


def build_messages(prompt: str, encoded) -> list:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": to_data_url(encoded)}},
            ],
        }
    ]


# Groq client

class GroqKeyRing:
    """
    Holds the configured API keys and the client for the key at the front.
    Keys rotate when one runs out of daily tokens or gets restricted; the
    rotation only affects the next analysis.
    """

    def __init__(self, api_keys, timeout: float = config.ANALYSIS_TIMEOUT_SECONDS):
        self.api_keys = list(api_keys)
        self.timeout = timeout
        self._queue = deque(self.api_keys)
        self._lock = threading.Lock()
        self.client = self._make_client(self._queue[0]) if self._queue else None

    def __len__(self) -> int:
        return len(self.api_keys)

    def _make_client(self, key: str) -> Groq:
        return Groq(api_key=key, timeout=self.timeout, max_retries=0)

    def rotate(self) -> bool:
        with self._lock:
            if len(self._queue) < 2:
                return False
            self._queue.rotate(-1)
            new_key = self._queue[0]
            if new_key == self.api_keys[0]:
                log.warning("All API keys have been tried and are likely exhausted.")
            log.info(f"Rotating to API key ...{new_key[-4:]}")
            self.client = self._make_client(new_key)
            return True


def should_rotate_key(error: APIStatusError) -> bool:
    message = str(getattr(error, 'message', error)).lower()
    is_tpd_limit = error.status_code == 429 and "tpd" in message
    is_restricted = error.status_code == 400 and "organization_restricted" in message
    return is_tpd_limit or is_restricted


# Reply parsing

def clean_llm_output(raw_text: str) -> str:
    """Strips a leading <think>...</think> block and any markdown code fence."""
    match = re.search(r'</think>(.*)', raw_text, re.DOTALL | re.IGNORECASE)
    text = match.group(1).strip() if match else raw_text.strip()
    fence = re.match(r'^```(?:json)?\s*(.*?)\s*```$', text, re.DOTALL | re.IGNORECASE)
    if fence:
        text = fence.group(1).strip()
    return text


def parse_paired_result(raw_text: Optional[str]) -> PairedResult:
    text = clean_llm_output(raw_text or "")
    if not text:
        raise AnalysisError(ErrorKind.MALFORMED_REPLY, "Empty reply from the model.")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AnalysisError(ErrorKind.MALFORMED_REPLY, f"Reply is not JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise AnalysisError(ErrorKind.MALFORMED_REPLY, "Reply is not a JSON object.")
    try:
        return PairedResult.model_validate(data)
    except ValidationError as e:
        raise AnalysisError(
            ErrorKind.MALFORMED_REPLY, f"Reply violates the schema ({e.error_count()} errors)."
        ) from e


# Remote invocation

def request_paired_result(client: Groq, encoded, language: str = config.DEFAULT_LANGUAGE,
                          model_id: str = config.MODEL_ID) -> PairedResult:
    """One non-streaming call carrying the prompt, the image and the schema."""
    chat_completion = client.chat.completions.create(
        messages=build_messages(build_analysis_prompt(language), encoded),
        model=model_id,
        temperature=config.ANALYSIS_TEMPERATURE,
        max_tokens=config.ANALYSIS_MAX_TOKENS,
        response_format={
            "type": "json_schema",
            "json_schema": {
                "name": config.RESPONSE_SCHEMA_NAME,
                "schema": build_response_schema(),
            },
        },
        stream=False,
    )
    return parse_paired_result(chat_completion.choices[0].message.content)


def classify_failure(error: Exception, key_ring: Optional[GroqKeyRing] = None) -> ErrorKind:
    if isinstance(error, AnalysisError):
        return error.kind
    if isinstance(error, APITimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, APIConnectionError):
        return ErrorKind.NETWORK
    if isinstance(error, APIStatusError):
        if key_ring is not None and should_rotate_key(error):
            key_ring.rotate()
        return ErrorKind.API_ERROR
    return ErrorKind.API_ERROR


def _await_result(future, cancel_event, timeout: float) -> PairedResult:
    deadline = time.monotonic() + timeout
    while True:
        if cancel_event is not None and cancel_event.is_set():
            future.cancel()
            raise AnalysisError(ErrorKind.CANCELLED, "Analysis cancelled by the user.")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            future.cancel()
            raise AnalysisError(ErrorKind.TIMEOUT, f"No reply within {timeout:.0f}s.")
        try:
            return future.result(timeout=min(remaining, POLL_INTERVAL_SECONDS))
        except FutureTimeout:
            continue


def run_analysis(key_ring: GroqKeyRing, content: bytes, mime_type: Optional[str] = None,
                 language: str = config.DEFAULT_LANGUAGE, cancel_event: Optional[threading.Event] = None,
                 timeout: Optional[float] = None) -> AnalysisOutcome:
    """
    Encodes the image, makes exactly one remote call and waits for it.
    Never raises: every failure becomes a fallback outcome tagged with its kind.
    """
    timeout = timeout if timeout is not None else config.ANALYSIS_TIMEOUT_SECONDS
    started = time.monotonic()
    try:
        try:
            encoded = encode_image(content, mime_type)
        except ValueError as e:
            raise AnalysisError(ErrorKind.ENCODING, str(e)) from e

        client = key_ring.client if key_ring is not None else None
        if client is None:
            raise AnalysisError(ErrorKind.UNCONFIGURED, "Groq API client is not initialized.")

        future = _EXECUTOR.submit(request_paired_result, client, encoded, language)
        result = _await_result(future, cancel_event, timeout)
    except Exception as e:
        kind = classify_failure(e, key_ring)
        log.error(f"AI analysis failed [{kind.value}] {e.__class__.__name__}: {e}")
        return AnalysisOutcome.failure(kind)

    log.info(f"AI analysis completed in {time.monotonic() - started:.1f}s")
    return AnalysisOutcome.success(result)

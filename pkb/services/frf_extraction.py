"""
Extraction client for the FRF pipeline.

Sends one batch transcript to Claude and parses facts, relationships and
followups from the JSON reply.

Failure contract (what the pipeline sees):
- RateLimitedError: quota exhausted (429, RateLimitError, RESOURCE_EXHAUSTED)
- ExtractionFailedError: any other transport failure (timeout, connection, 5xx)
- Malformed or non-JSON output is NOT an error: it yields an empty result

All string sniffing of provider errors happens here, in
classify_extraction_error(); the pipeline only sees typed exceptions.

NOTE: anthropic library is imported lazily to speed up test collection.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from config.fact_types import FACT_TYPES, normalize_fact_type
from config.relationship_labels import RELATIONSHIP_LABELS, normalize_label
from config.settings import settings
from pkb.services.resilience import ExtractionFailedError, PipelineError, RateLimitedError

logger = logging.getLogger(__name__)

# Substrings (lowercased) that mark a provider error as a quota refusal
RATE_LIMIT_MARKERS = ("resource_exhausted", "rate limit", "rate_limit")
# A bare 429 only as a whole token, not inside ids like "req_4291ab"
RATE_LIMIT_STATUS_RE = re.compile(r"\b429\b")

FRF_EXTRACTION_PROMPT = """You are reading {user_name}'s conversation history with {contact_name} \
to keep a personal CRM up to date. Today is {today}.

The transcript has two sections. Messages under "CONTEXT ONLY" are earlier history:
use them to understand the conversation but do NOT extract anything from them.
Extract only from messages under "NEW MESSAGES".

Extract:
1. Facts about {contact_name}. fact_type must be one of: {fact_types}.
   Use "custom" for any other notable fact. Dates as YYYY-MM-DD.
2. Relationships {contact_name} has with other people. label must be one of: {labels}.
3. Followups {user_name} should act on: promises ("I'll send you..."), meeting
   requests ("let's catch up next week"), deadlines ("by Friday").

Confidence is 0.0-1.0: 0.9+ only when the message states the fact directly.

Transcript:
\"\"\"
{transcript}
\"\"\"

Respond with JSON only:
{{
  "facts": [
    {{"fact_type": "string", "value": "human readable value", "structured_value": {{}} or null, "confidence": 0.0}}
  ],
  "relationships": [
    {{"label": "string", "person_name": "string", "confidence": 0.0}}
  ],
  "followups": [
    {{"reason": "what needs to be done", "suggested_date": "YYYY-MM-DD"}}
  ]
}}

If nothing is found, return empty arrays."""


@dataclass
class ExtractedFact:
    fact_type: str
    value: str
    confidence: float
    structured_value: Optional[dict] = None


@dataclass
class ExtractedRelationship:
    label: str
    person_name: str
    confidence: float


@dataclass
class ExtractedFollowup:
    reason: str
    suggested_date: Optional[str] = None


@dataclass
class ExtractionResult:
    """Parsed extractor output. Never persisted directly."""
    facts: list[ExtractedFact] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)
    followups: list[ExtractedFollowup] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.facts or self.relationships or self.followups)


def classify_extraction_error(error: Exception) -> PipelineError:
    """
    Map a provider/transport exception to the pipeline's error taxonomy.

    Returns:
        RateLimitedError for quota refusals, ExtractionFailedError otherwise
    """
    if isinstance(error, PipelineError):
        return error

    import anthropic

    retry_after = None
    response = getattr(error, "response", None)
    if response is not None:
        try:
            retry_after = float(response.headers.get("retry-after"))
        except (AttributeError, TypeError, ValueError):
            retry_after = None

    if isinstance(error, anthropic.RateLimitError):
        return RateLimitedError(str(error), retry_after=retry_after)
    if getattr(error, "status_code", None) == 429:
        return RateLimitedError(str(error), retry_after=retry_after)

    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in RATE_LIMIT_MARKERS) or RATE_LIMIT_STATUS_RE.search(message):
        return RateLimitedError(message, retry_after=retry_after)

    if isinstance(error, anthropic.APITimeoutError):
        return ExtractionFailedError(f"Extraction timed out: {message}")
    return ExtractionFailedError(message or type(error).__name__)


def _extract_json_text(response_text: str) -> Optional[str]:
    """Pull the JSON object out of a reply that may be fenced or chatty."""
    if "```json" in response_text:
        start = response_text.find("```json") + 7
        end = response_text.find("```", start)
        return response_text[start:end if end != -1 else None].strip()
    if "```" in response_text:
        start = response_text.find("```") + 3
        end = response_text.find("```", start)
        return response_text[start:end if end != -1 else None].strip()
    match = re.search(r"\{[\s\S]*\}", response_text)
    return match.group(0) if match else None


def _parse_confidence(value: Any) -> Optional[float]:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(confidence, 0.0), 1.0)


def parse_extraction_response(response_text: str, confidence_threshold: float = 0.0) -> ExtractionResult:
    """
    Parse the extractor's JSON reply.

    Malformed output yields an empty result. Facts and relationships below
    confidence_threshold, or missing required fields, are dropped.
    """
    result = ExtractionResult()
    json_text = _extract_json_text(response_text or "")
    if not json_text:
        logger.warning("Extraction response contained no JSON")
        return result

    try:
        data = json.loads(json_text)
    except json.JSONDecodeError as e:
        logger.warning(f"Extraction response was not valid JSON: {e}")
        return result
    if not isinstance(data, dict):
        logger.warning("Extraction response JSON was not an object")
        return result

    for item in data.get("facts") or []:
        if not isinstance(item, dict):
            continue
        value = str(item.get("value") or "").strip()
        confidence = _parse_confidence(item.get("confidence"))
        if not value or confidence is None or confidence < confidence_threshold:
            continue
        structured = item.get("structured_value")
        result.facts.append(ExtractedFact(
            fact_type=normalize_fact_type(str(item.get("fact_type") or "")),
            value=value,
            confidence=confidence,
            structured_value=structured if isinstance(structured, dict) and structured else None,
        ))

    for item in data.get("relationships") or []:
        if not isinstance(item, dict):
            continue
        label = normalize_label(str(item.get("label") or ""))
        person_name = str(item.get("person_name") or "").strip()
        confidence = _parse_confidence(item.get("confidence"))
        if not label or not person_name or confidence is None or confidence < confidence_threshold:
            continue
        if label not in RELATIONSHIP_LABELS:
            logger.debug(f"Unknown relationship label from extraction: {label}")
        result.relationships.append(ExtractedRelationship(
            label=label, person_name=person_name, confidence=confidence
        ))

    for item in data.get("followups") or []:
        if not isinstance(item, dict):
            continue
        reason = str(item.get("reason") or "").strip()
        if not reason:
            continue
        suggested = item.get("suggested_date")
        result.followups.append(ExtractedFollowup(
            reason=reason,
            suggested_date=str(suggested) if suggested else None,
        ))

    return result


class FRFExtractor:
    """
    Claude-backed extraction client for FRF batches.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        confidence_threshold: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Any = None,
    ):
        """
        Initialize extractor.

        Args:
            model: Claude model name (defaults to settings.extraction_model)
            confidence_threshold: Drop facts/relationships below this
            timeout: Per-call timeout in seconds
            client: Pre-built Anthropic client (tests inject a fake)
        """
        self.model = model or settings.extraction_model
        self.confidence_threshold = (
            settings.frf_confidence_threshold if confidence_threshold is None else confidence_threshold
        )
        self.timeout = timeout or settings.extraction_timeout
        self._client: Any = client

    @property
    def client(self):
        """Lazy-load the Anthropic client."""
        if self._client is None:
            import anthropic
            # Retries are owned by the pipeline (retry once, abort on 429)
            self._client = anthropic.Anthropic(
                api_key=settings.anthropic_api_key,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def is_available(self) -> bool:
        """Check if extraction can run (AI enabled and a key or client present)."""
        if self._client is not None:
            return True
        return settings.ai_available

    def build_prompt(self, transcript: str, contact_name: str) -> str:
        return FRF_EXTRACTION_PROMPT.format(
            user_name=settings.user_name,
            contact_name=contact_name,
            today=datetime.now(timezone.utc).date().isoformat(),
            fact_types=", ".join(sorted(FACT_TYPES)),
            labels=", ".join(sorted(RELATIONSHIP_LABELS)),
            transcript=transcript,
        )

    def extract_from_batch(self, transcript: str, contact_name: str) -> ExtractionResult:
        """
        Extract facts, relationships and followups from one transcript.

        Raises:
            RateLimitedError: The provider refused for quota reasons
            ExtractionFailedError: Any other transport failure
        """
        prompt = self.build_prompt(transcript, contact_name)
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=4096,
                messages=[{"role": "user", "content": prompt}],
                timeout=self.timeout,
            )
        except Exception as e:
            raise classify_extraction_error(e) from e

        response_text = "".join(
            getattr(block, "text", "") for block in (getattr(response, "content", None) or [])
        )
        result = parse_extraction_response(response_text, self.confidence_threshold)
        logger.debug(
            f"Extracted {len(result.facts)} facts, {len(result.relationships)} relationships, "
            f"{len(result.followups)} followups for {contact_name}"
        )
        return result


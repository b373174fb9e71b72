"""LLM-based bill field extraction using pydantic-ai."""

from __future__ import annotations

import logging
from html.parser import HTMLParser
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic_ai import Agent, BinaryContent

from billflow.config import get_anthropic_api_key, get_llm_model
from billflow.errors import ExtractionFailure
from billflow.models import DocumentType, ExtractedFields, SourceDocument

if TYPE_CHECKING:
    from billflow.config import EnginePolicy

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """\
You are an accounts-payable document reader. Given an invoice, bill, receipt \
or statement, extract the following fields:

- vendor_name: The canonical business name of the payee
- vendor_email: The payee's billing email address, if shown
- amount: The subtotal before tax and discounts (numeric, e.g. 250.00)
- tax_amount: Total tax charged (0 if none)
- discount_amount: Total discount applied (0 if none)
- currency: ISO 4217 currency code (e.g. "USD", "CAD", "EUR")
- issue_date: The invoice/bill date (YYYY-MM-DD)
- due_date: The payment due date (YYYY-MM-DD), omit if not stated
- invoice_number: The vendor's invoice or bill number
- description: Brief summary of what is being billed
- line_items: Each billed line with description, amount, quantity, unit_price
- raw_text: The document text as you read it
- confidence: Your confidence in the extraction from 0.0 to 1.0. \
Use below 0.5 if the document may not be a bill or key fields are uncertain.

Never invent a due date. If the currency is not stated, assume USD.\
"""

_TEXT_TYPES = ("text/plain", "text/csv", "text/markdown")


@runtime_checkable
class Extractor(Protocol):
    """Protocol for extraction providers."""

    def extract(
        self,
        document: SourceDocument,
        document_type: DocumentType,
        *,
        timeout: float,
    ) -> ExtractedFields: ...


def create_extraction_agent() -> Agent[None, ExtractedFields]:
    """Create a pydantic-ai Agent configured for bill extraction."""
    # Ensure API key is available (fail fast)
    get_anthropic_api_key()

    model_name = get_llm_model()
    return Agent(
        f"anthropic:{model_name}",
        output_type=ExtractedFields,
        system_prompt=_SYSTEM_PROMPT,
    )


class AgentExtractor:
    """Extraction provider backed by a pydantic-ai agent.

    Accepts an optional agent for dependency injection in tests.
    """

    def __init__(self, agent: Agent[None, ExtractedFields] | None = None) -> None:
        self._agent = agent

    @property
    def agent(self) -> Agent[None, ExtractedFields]:
        if self._agent is None:
            self._agent = create_extraction_agent()
        return self._agent

    def extract(
        self,
        document: SourceDocument,
        document_type: DocumentType,
        *,
        timeout: float,
    ) -> ExtractedFields:
        """Extract structured fields from ``document``.

        Any provider failure, including a timeout, surfaces as
        ExtractionFailure.
        """
        prompt = _build_prompt(document, document_type)
        try:
            result: Any = self.agent.run_sync(
                prompt, model_settings={"timeout": timeout}
            )
        except Exception as exc:
            logger.warning(
                "Extraction provider failed for %s", document.filename, exc_info=True
            )
            msg = f"extraction provider failed: {exc}"
            raise ExtractionFailure(msg) from exc
        return result.output  # type: ignore[no-any-return]


def extract_fields(
    extractor: Extractor,
    document: SourceDocument,
    document_type: DocumentType,
    policy: EnginePolicy,
) -> ExtractedFields:
    """Run ``extractor`` and apply the extraction policy.

    Raises ExtractionFailure when the document yields no usable data.
    """
    if not document.data:
        msg = f"document {document.filename} is empty"
        raise ExtractionFailure(msg)

    fields = extractor.extract(
        document, document_type, timeout=policy.extraction_timeout
    )
    if not fields.is_usable:
        msg = f"vendor and amount could not be read from {document.filename}"
        raise ExtractionFailure(msg)

    logger.info(
        "Extracted %s from %s (confidence %.2f)",
        fields.amount,
        document.filename,
        fields.confidence,
    )
    return fields


def is_low_confidence(fields: ExtractedFields, policy: EnginePolicy) -> bool:
    return fields.confidence < policy.confidence_threshold


def _build_prompt(
    document: SourceDocument, document_type: DocumentType
) -> list[str | BinaryContent]:
    """Build the user prompt parts for a document."""
    hint = (
        "Determine the document type yourself."
        if document_type is DocumentType.AUTO
        else f"The document is expected to be a {document_type.value}."
    )
    header = "\n".join(
        [
            f"File: {document.filename}",
            f"Content-Type: {document.content_type}",
            hint,
        ]
    )

    content_type = document.content_type.lower()
    if content_type == "text/html":
        text = document.data.decode("utf-8", errors="replace")
        return [f"{header}\n\n--- Document ---\n{_strip_html_tags(text)}"]
    if content_type in _TEXT_TYPES:
        text = document.data.decode("utf-8", errors="replace")
        return [f"{header}\n\n--- Document ---\n{text}"]
    return [header, BinaryContent(data=document.data, media_type=document.content_type)]


def _strip_html_tags(html: str) -> str:
    """Remove HTML tags, returning only text content."""
    stripper = _HTMLTagStripper()
    stripper.feed(html)
    return stripper.get_text()


class _HTMLTagStripper(HTMLParser):
    """HTMLParser subclass that strips tags and returns text."""

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []

    def handle_data(self, data: str) -> None:
        self._parts.append(data)

    def handle_entityref(self, name: str) -> None:
        self._parts.append(f"&{name};")

    def handle_charref(self, name: str) -> None:
        self._parts.append(f"&#{name};")

    def get_text(self) -> str:
        return "".join(self._parts)

"""
Document generation collaborator used by the completion auto-action.
"""

import logging
from typing import Optional, Protocol

from ..models import Exchange, ExchangeDocument

logger = logging.getLogger(__name__)


class DocumentGenerator(Protocol):
    def generate(self, exchange: Exchange, document_type: str,
                 generated_by=None) -> ExchangeDocument:
        ...


class RecordingDocumentGenerator:
    """
    Registers generated documents against the exchange.

    Rendering and file storage belong to the document service; this only
    records that the document now exists.
    """

    def generate(self, exchange: Exchange, document_type: str,
                 generated_by: Optional[str] = None) -> ExchangeDocument:
        document = ExchangeDocument.objects.create(
            exchange=exchange,
            document_type=document_type,
            title=f"{ExchangeDocument.DocumentType(document_type).label} - {exchange.code}",
            is_generated=True,
            generated_by=generated_by,
        )
        logger.info(f"Generated {document_type} for exchange {exchange.code}")
        return document

"""Request/response document generation, reusing the cache and pool directly."""
from typing import Any, Dict, Optional

from docgen.document_processor import DocumentProcessor
from docgen.errors import wrap_error
from docgen.logging_conf import logger, new_correlation_id
from docgen.queue.models import DocgenRequest


class InteractiveGenerator:
    """Generates a single document synchronously for a caller.

    Failures are returned as structured error bodies rather than raised.
    """

    def __init__(self, processor: DocumentProcessor):
        self.processor = processor

    async def generate(self, payload: Any, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id("gen")
        log_extra = {"correlation_id": correlation_id}
        try:
            request = DocgenRequest.from_payload(payload)
            document = await self.processor.render(request, correlation_id)
            stored = await self.processor.store_document(document, correlation_id)
        except Exception as e:
            error = wrap_error(e, {"correlation_id": correlation_id})
            logger.warning(f"Generation failed ({error.code.value}): {error.message}", extra=log_extra)
            return error.to_api_response(correlation_id)

        logger.info(f"Generated {document.file_name}", extra=log_extra)
        body = {
            "fileId": stored.output.file_id,
            "fileName": document.file_name,
            "path": stored.output.path,
            "size": stored.output.size,
            "correlationId": correlation_id,
        }
        if stored.merged_docx is not None:
            body["mergedDocxFileId"] = stored.merged_docx.file_id
        return body

"""Merge -> convert -> upload pipeline shared by the batch and interactive paths."""
import asyncio
from dataclasses import dataclass
from typing import Optional

from docgen.convert.soffice import ConversionOptions, ConversionPool
from docgen.errors import PartialUploadError
from docgen.interfaces import FileStore, RecordStore, TemplateMerger
from docgen.logging_conf import logger
from docgen.queue.backoff import success_update
from docgen.queue.models import DocgenRequest, FileRef, OutputFormat, QueuedItem, StatusUpdate
from docgen.templates.service import TemplateService


@dataclass
class RenderedDocument:
    content: bytes
    file_name: str
    merged_docx: Optional[bytes] = None


@dataclass
class StoredDocument:
    output: FileRef
    merged_docx: Optional[FileRef] = None


def output_file_name(request: DocgenRequest) -> str:
    """Request file name with the extension forced to the output format."""
    ext = "." + request.output_format.value.lower()
    name = request.output_file_name
    if name.lower().endswith(ext):
        return name
    return name + ext


class DocumentProcessor:
    """Renders a request into a finished document and stores it."""

    def __init__(
        self,
        templates: TemplateService,
        merger: TemplateMerger,
        pool: ConversionPool,
        file_store: FileStore,
        store: Optional[RecordStore] = None,
    ):
        self.templates = templates
        self.merger = merger
        self.pool = pool
        self.file_store = file_store
        self.store = store

    async def render(self, request: DocgenRequest, correlation_id: Optional[str] = None) -> RenderedDocument:
        template = await self.templates.get_template(request.template_id, correlation_id)
        merged = await asyncio.to_thread(
            self.merger.merge, template, request.data, request.locale, request.timezone
        )
        file_name = output_file_name(request)

        if request.output_format == OutputFormat.DOCX:
            return RenderedDocument(content=merged, file_name=file_name)

        pdf = await self.pool.convert(
            merged, ConversionOptions(target_format="pdf", correlation_id=correlation_id)
        )
        keep_docx = merged if request.options.store_merged_docx else None
        return RenderedDocument(content=pdf, file_name=file_name, merged_docx=keep_docx)

    async def store_document(self, document: RenderedDocument, correlation_id: Optional[str] = None) -> StoredDocument:
        output = await asyncio.to_thread(
            self.file_store.upload, document.content, document.file_name, correlation_id
        )
        merged_ref = None
        if document.merged_docx is not None:
            docx_name = document.file_name.rsplit(".", 1)[0] + ".docx"
            try:
                merged_ref = await asyncio.to_thread(
                    self.file_store.upload, document.merged_docx, docx_name, correlation_id
                )
            except Exception as e:
                # The output upload stands and is orphaned
                raise PartialUploadError(
                    f"Stored {document.file_name} but not its merged DOCX: {e}",
                    {"output_file_id": output.file_id, "file_name": docx_name},
                ) from e
        return StoredDocument(output=output, merged_docx=merged_ref)

    async def process(self, item: QueuedItem, correlation_id: Optional[str] = None) -> StatusUpdate:
        """
        Run one queued item end to end and return its success update.

        Any failure propagates to the caller. A link failure happens after the
        upload, so the stored file is left in place.
        """
        request = DocgenRequest.from_payload(item.request_json)
        document = await self.render(request, correlation_id)
        stored = await self.store_document(document, correlation_id)

        if self.store is not None and request.parents:
            await asyncio.to_thread(self.store.link_output, item.id, stored.output, request.parents)

        logger.info(f"Generated {document.file_name} for item {item.id}", extra={"correlation_id": correlation_id})
        return success_update(
            stored.output.file_id,
            stored.merged_docx.file_id if stored.merged_docx else None,
        )

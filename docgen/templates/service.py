"""Cache-first template retrieval."""
import asyncio
from typing import Optional

from docgen.errors import DocgenError, wrap_error
from docgen.interfaces import TemplateSource
from docgen.logging_conf import logger
from docgen.templates.cache import TemplateCache


class TemplateService:
    """Serves template bytes from the cache, fetching from the source on a miss.

    Two concurrent misses for the same id may both fetch; the second put is a
    no-op because entries are immutable.
    """

    def __init__(self, source: TemplateSource, cache: TemplateCache):
        self.source = source
        self.cache = cache

    async def get_template(self, template_id: str, correlation_id: Optional[str] = None) -> bytes:
        cached = self.cache.lookup(template_id)
        if cached is not None:
            return cached

        logger.info(f"Fetching template {template_id}", extra={"correlation_id": correlation_id})
        try:
            content = await asyncio.to_thread(self.source.download_template, template_id)
        except DocgenError:
            raise
        except Exception as e:
            raise wrap_error(e, {"template_id": template_id}) from e

        self.cache.put(template_id, content)
        return content

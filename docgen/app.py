"""Main application - wires the record store, cache, pool and poller together."""
import asyncio
import signal
import sys
from typing import Any, Dict

from docgen import settings
from docgen.convert.soffice import ConversionPool
from docgen.db import Database
from docgen.document_processor import DocumentProcessor
from docgen.interactive import InteractiveGenerator
from docgen.logging_conf import logger
from docgen.poller import Poller
from docgen.record_client import RecordClient
from docgen.storage import LocalFileStore
from docgen.templates.cache import TemplateCache
from docgen.templates.merge import DocxTemplateMerger
from docgen.templates.service import TemplateService


class Application:
    """Owns the process-wide shared resources and the poller."""

    def __init__(self, db=None, template_source=None, file_store=None, pool=None, cache=None):
        self.db = db or Database()
        self.cache = cache or TemplateCache()
        self.pool = pool or ConversionPool()
        self.templates = TemplateService(template_source or RecordClient(), self.cache)
        self.processor = DocumentProcessor(
            self.templates,
            DocxTemplateMerger(),
            self.pool,
            file_store or LocalFileStore(),
            store=self.db,
        )
        self.interactive = InteractiveGenerator(self.processor)
        self.poller = Poller(self.db, self.processor, concurrency=self.pool.max_concurrent)
        self._stop_requested = None

    async def start(self):
        logger.info("=" * 50)
        logger.info("Document Generation Worker")
        logger.info("=" * 50)
        logger.info(f"Storage: {settings.OUTPUT_STORAGE_PATH}")
        logger.info(f"Poll interval: {settings.POLL_INTERVAL}s (idle {settings.POLL_IDLE_INTERVAL}s)")
        logger.info(f"Conversion: {self.pool.max_concurrent} slots, {self.pool.timeout:g}s timeout")
        logger.info("=" * 50)

        await asyncio.to_thread(self.db.ensure_schema)
        await self.poller.start()

    async def stop(self):
        await self.poller.stop()
        self.db.close()
        logger.info("Stopped")

    def request_stop(self):
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run(self):
        """Run until SIGINT/SIGTERM, then drain in-flight work."""
        self._stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

        await self.start()
        await self._stop_requested.wait()
        await self.stop()

    def _on_signal(self, sig):
        logger.info(f"Received signal {sig.name}, draining in-flight items")
        self.request_stop()

    def health(self) -> Dict[str, Any]:
        poller = self.poller.health()
        try:
            db_ok = self.db.ping()
        except Exception as e:
            logger.error(f"Record store unreachable: {e}")
            db_ok = False
        return {
            "ready": poller["ready"] and db_ok,
            "record_store": db_ok,
            "poller": poller,
            "conversion": self.pool.stats(),
            "template_cache": self.cache.stats(),
        }


def main():
    """Entry point."""
    try:
        settings.validate_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    asyncio.run(Application().run())


if __name__ == "__main__":
    main()

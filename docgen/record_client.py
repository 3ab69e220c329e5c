"""Record system file API client for template downloads."""
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import requests

from docgen import settings
from docgen.errors import TemplateNotFoundError, UpstreamTransientError, error_for_status
from docgen.logging_conf import logger


class RecordClient:
    """Downloads template files from the record system."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 max_retries: int = 3, timeout: int = 30):
        self.base_url = (base_url or settings.RECORD_API_BASE_URL or "").rstrip("/")
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/octet-stream"})
        token = token or settings.RECORD_API_TOKEN
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def download_template(self, template_id: str) -> bytes:
        """
        Fetch the raw bytes of a template file.

        Raises:
            TemplateNotFoundError: the record system has no such file
            UpstreamTransientError: rate limited, 5xx or unreachable after retries
            UpstreamPermanentError: any other 4xx
        """
        response = self._request("GET", f"/files/{template_id}/content")
        if response.status_code == 404:
            raise TemplateNotFoundError(template_id)
        if response.status_code >= 400:
            raise error_for_status(response.status_code,
                                   f"Template download failed with HTTP {response.status_code}",
                                   {"template_id": template_id})
        logger.debug(f"Downloaded template {template_id} ({len(response.content)} bytes)")
        return response.content

    def _request(self, method: str, endpoint: str, retry_count: int = 0) -> requests.Response:
        """Make API request with retry logic."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(method=method, url=url, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if retry_count < self.max_retries:
                time.sleep(2 ** retry_count)
                return self._request(method, endpoint, retry_count + 1)
            logger.error(f"Record API request failed: {e}")
            raise UpstreamTransientError(f"Record API unreachable: {e}", {"url": url}) from e

        if response.status_code == 429 and retry_count < self.max_retries:
            retry_after = _retry_after(response.headers.get("Retry-After"), 2 ** retry_count)
            logger.warning(f"Rate limited. Waiting {retry_after}s...")
            time.sleep(retry_after)
            return self._request(method, endpoint, retry_count + 1)

        if response.status_code >= 500 and retry_count < self.max_retries:
            wait_time = 2 ** retry_count
            logger.warning(f"Server error {response.status_code}. Retrying in {wait_time}s...")
            time.sleep(wait_time)
            return self._request(method, endpoint, retry_count + 1)

        return response


def _retry_after(value: Optional[str], default: int) -> int:
    """Seconds to wait from a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return default
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))

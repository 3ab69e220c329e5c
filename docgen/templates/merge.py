"""DOCX template merge using docxtpl (Jinja2 placeholders)."""
import io
import zipfile
from datetime import date, datetime, timezone as dt_timezone
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jinja2
from docx.opc.exceptions import PackageNotFoundError
from docxtpl import DocxTemplate

from docgen.errors import TemplateInvalidFormatError, TemplateMergeError, ValidationError


def _build_env(locale: str, timezone: str) -> jinja2.Environment:
    try:
        tz = dt_timezone.utc if timezone.upper() == "UTC" else ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {timezone}", {"timezone": timezone})

    def format_datetime(value, fmt="%Y-%m-%d %H:%M"):
        if isinstance(value, str):
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(tz)
            return value.strftime(fmt)
        if isinstance(value, date):
            return value.strftime(fmt.split(" ")[0])
        return value

    env = jinja2.Environment()
    env.filters["datetime"] = format_datetime
    env.globals["locale"] = locale
    env.globals["timezone"] = timezone
    return env


class DocxTemplateMerger:
    """Substitutes a data tree into a DOCX template.

    ``{{ field }}`` placeholders and ``{% %}`` blocks follow Jinja2 syntax.
    Dates can be rendered in the request timezone with ``{{ value|datetime }}``.
    """

    def merge(self, template: bytes, data: Dict[str, Any], locale: str = "en-GB", timezone: str = "UTC") -> bytes:
        env = _build_env(locale, timezone)
        try:
            doc = DocxTemplate(io.BytesIO(template))
            doc.render(data, jinja_env=env)
            out = io.BytesIO()
            doc.save(out)
        except (zipfile.BadZipFile, PackageNotFoundError, KeyError) as e:
            raise TemplateInvalidFormatError(f"not a readable DOCX file ({e})") from e
        except jinja2.TemplateError as e:
            raise TemplateMergeError(str(e) or type(e).__name__, {"error_type": type(e).__name__}) from e
        return out.getvalue()

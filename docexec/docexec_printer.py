"""
Renders captured results as text or rich media.

Rich display detection goes through IPython's display formatter, so any
object that implements the `_repr_html_` / `_repr_png_` / ... protocol (or
`_repr_mimebundle_`) is embedded as rich media, exactly as it would be in
a notebook.
"""
import base64
import re
from typing import Any, Dict, Optional

from IPython.core.formatters import DisplayFormatter

from docexec.docexec_datatypes import CapturedResult, PlainValue, RichValue, Failure

# MIME types that make a value richly renderable, in order of preference.
RICH_MIMETYPES = (
    "text/markdown",
    "text/html",
    "image/svg+xml",
    "image/png",
    "image/jpeg",
    "text/latex",
)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def strip_ansi(text: str) -> str:
    """Removes terminal color and cursor escape sequences."""
    return _ANSI_RE.sub("", text)


def mime_text(bundle: Dict[str, Any], mime: str) -> str:
    """One bundle entry as text; binary image data is base64 encoded."""
    data = bundle[mime]
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(data).decode("ascii")
    if isinstance(data, str):
        return data
    return str(data)


class Printer:
    """Formats captured results into text and MIME bundles."""

    def __init__(self):
        self._formatter: Optional[DisplayFormatter] = None

    @property
    def formatter(self) -> DisplayFormatter:
        if self._formatter is None:
            self._formatter = DisplayFormatter()
        return self._formatter

    def mimebundle(self, value: Any) -> Dict[str, Any]:
        """Returns the display formatter's MIME bundle for a value."""
        data, _metadata = self.formatter.format(value)
        return dict(data or {})

    def classify(self, value: Any) -> Optional[CapturedResult]:
        """Wraps a fragment's final value; `None` means there is no result to show."""
        if value is None:
            return None
        bundle = self.mimebundle(value)
        if any(mime in bundle for mime in RICH_MIMETYPES):
            return RichValue(value, bundle)
        return PlainValue(value)

    def pformat(self, result: Any) -> str:
        """Text rendering for any captured result."""
        match result:
            case None:
                return ""
            case Failure():
                return result.format_error()
            case RichValue(value=value, mimebundle=bundle):
                return str(bundle.get("text/plain", repr(value)))
            case PlainValue(value=value):
                return self.pformat_value(value)
            case _:
                return self.pformat_value(result)

    def pformat_value(self, value: Any) -> str:
        bundle = self.mimebundle(value)
        if "text/plain" in bundle:
            return str(bundle["text/plain"])
        return repr(value)

    def preferred_mimetype(self, result: RichValue) -> Optional[str]:
        """The richest available representation of a rich result."""
        for mime in RICH_MIMETYPES:
            if mime in result.mimebundle:
                return mime
        return None

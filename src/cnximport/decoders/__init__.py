"""Module document decoder implementations and contracts."""

from .base import DocumentParseError, ModuleDecoder
from .cnxml_decoder import CNXMLDecoder
from .html_decoder import HTMLDecoder


def build_default_decoders() -> list[ModuleDecoder]:
    """Return decoders in lookup priority order."""
    return [CNXMLDecoder(), HTMLDecoder()]


__all__ = [
    "CNXMLDecoder",
    "DocumentParseError",
    "HTMLDecoder",
    "ModuleDecoder",
    "build_default_decoders",
]

"""
Turns a TMS object into a flat record for the csv.

The TMS api serves text whose utf-8 bytes were decoded as windows-1252 somewhere upstream,
  so "Café" arrives as "CafÃ©". `decode_utf8_interpreted_as_win()` undoes that.
"""

import codecs
import logging

from tms_export_config import ExportConfig
from tms_source import TmsObject

log = logging.getLogger(__name__)


def _c1_as_bytes(exc: UnicodeError) -> tuple[bytes, int]:
    """
    Encode error-handler: writes C1 control characters (U+0080-U+009F) as their single byte.
    Lenient windows-1252 decoders map the five bytes cp1252 leaves undefined (0x81, 0x8D, 0x8F, 0x90, 0x9D)
      to those code points, so e.g. the utf-8 bytes of "Á" (C3 81) arrive as "Ã" followed by U+0081.
    """
    if not isinstance(exc, UnicodeEncodeError):
        raise exc
    chars: str = exc.object[exc.start : exc.end]
    if not all(0x80 <= ord(c) <= 0x9F for c in chars):
        raise exc
    return bytes(ord(c) for c in chars), exc.end


codecs.register_error('tms_c1_as_bytes', _c1_as_bytes)


def decode_utf8_interpreted_as_win(value: object) -> object:
    """
    Re-decodes a string that was utf-8 mis-read as windows-1252; returns anything else unchanged.
    Best-effort: if the string can't be round-tripped it's returned as-is.
    Called by: RecordBuilder.build()
    """
    if not isinstance(value, str):
        return value
    try:
        return value.encode('cp1252', errors='tms_c1_as_bytes').decode('utf-8')
    except UnicodeError:
        return value


class RecordBuilder:
    """
    Builds the (primary-key-value, record) pair for one object.
    - Record keys follow the configured field order; fields the object lacks are left out.
    - Every string value is passed through `decode_utf8_interpreted_as_win()`.
    """

    def __init__(self, export_config: ExportConfig) -> None:
        self.primary_key: str = export_config.primary_key
        self.field_names: list[str] = export_config.output_headers

    def build(self, tms_object: TmsObject) -> tuple[object, dict[str, object]]:
        object_id: object = tms_object.description_with_fields([self.primary_key]).get(self.primary_key)
        description: dict[str, object] = tms_object.description_with_fields(self.field_names)
        record: dict[str, object] = {key: decode_utf8_interpreted_as_win(value) for key, value in description.items()}
        log.debug(f'record for ``{object_id}``: {record}')
        return decode_utf8_interpreted_as_win(object_id), record

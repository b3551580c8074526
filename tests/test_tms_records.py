import json
import unittest
from pathlib import Path

from tms_export_config import ExportConfig
from tms_records import RecordBuilder, decode_utf8_interpreted_as_win
from tms_source import TmsObject

TEST_DATA: Path = Path(__file__).parent / 'test_data'


class TestDecodeUtf8InterpretedAsWin(unittest.TestCase):
    """
    Tests the windows-1252 mis-decoding fix-up.
    """

    def test_fixes_mojibake(self) -> None:
        self.assertEqual(decode_utf8_interpreted_as_win('CafÃ©'), 'Café')
        self.assertEqual(decode_utf8_interpreted_as_win('Ã‰douard Manet'), 'Édouard Manet')

    def test_fixes_mojibake_with_undefined_cp1252_bytes(self) -> None:
        """
        Checks letters whose utf-8 bytes include 0x81 / 0x8D / 0x90 / 0x9D, which lenient decoders turn into C1 controls.
        """
        cases: dict[str, str] = {
            'Ã\x81rpÃ¡d': 'Árpád',
            'Ã\x8dÃ±igo': 'Íñigo',
            'Ã\x90orÄ‘e': 'Ðorđe',
            'Ã\x9dmir': 'Ýmir',
        }
        for garbled, expected in cases.items():
            with self.subTest(garbled=garbled):
                self.assertEqual(decode_utf8_interpreted_as_win(garbled), expected)

    def test_lone_control_characters_pass_through(self) -> None:
        self.assertEqual(decode_utf8_interpreted_as_win('a\x81b'), 'a\x81b')  # 0x81 alone is not valid utf-8

    def test_ascii_unchanged(self) -> None:
        self.assertEqual(decode_utf8_interpreted_as_win('The Card Players'), 'The Card Players')

    def test_unfixable_strings_pass_through(self) -> None:
        """
        Checks that strings which can't be round-tripped come back unchanged instead of raising.
        """
        self.assertEqual(decode_utf8_interpreted_as_win('Café'), 'Café')  # lone 0xE9 is not valid utf-8
        self.assertEqual(decode_utf8_interpreted_as_win('東京'), '東京')  # not encodable as cp1252

    def test_non_strings_pass_through(self) -> None:
        self.assertEqual(decode_utf8_interpreted_as_win(5189), 5189)
        self.assertIsNone(decode_utf8_interpreted_as_win(None))


class TestRecordBuilder(unittest.TestCase):
    """
    Tests building records from TMS objects.
    """

    def setUp(self) -> None:
        self.export_config: ExportConfig = ExportConfig.from_path(TEST_DATA / 'export_config.json')
        with (TEST_DATA / 'object_5189.json').open('r', encoding='utf-8') as fh:
            self.tms_object: TmsObject = TmsObject.from_json(json.load(fh))

    def test_builds_record_from_fixture(self) -> None:
        object_id, record = RecordBuilder(self.export_config).build(self.tms_object)
        self.assertEqual(object_id, 5189)
        expected: dict[str, object] = {
            'id': 5189,
            'title': 'The Card Players',
            'people': 'Paul Cézanne',
            'classification': 'Paintings',
            'dated': '1890-1892',
        }
        self.assertEqual(record, expected)
        self.assertEqual(list(record.keys()), ['id', 'title', 'people', 'classification', 'dated'])

    def test_missing_fields_left_out(self) -> None:
        tms_object = TmsObject({'id': 7, 'dated': '1910', 'title': None})
        object_id, record = RecordBuilder(self.export_config).build(tms_object)
        self.assertEqual(object_id, 7)
        self.assertEqual(record, {'id': 7, 'dated': '1910'})


if __name__ == '__main__':
    unittest.main()

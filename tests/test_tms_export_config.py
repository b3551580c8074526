import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from tms_export_config import ConfigurationError, Credentials, ExportConfig

TEST_DATA: Path = Path(__file__).parent / 'test_data'


def minimal_config(**overrides: object) -> dict[str, object]:
    config: dict[str, object] = {
        'apiURL': 'https://tms.example.org/api',
        'outputDirectory': '/tmp/tms_out',
        'fields': [{'name': 'id', 'primaryKey': True}, {'name': 'title'}],
    }
    config.update(overrides)
    return config


class TestExportConfig(unittest.TestCase):
    """
    Tests building and validating ExportConfig.
    """

    def test_loads_fixture(self) -> None:
        """
        Checks the fixture config parses into the expected values.
        """
        export_config: ExportConfig = ExportConfig.from_path(TEST_DATA / 'export_config.json')
        self.assertEqual(export_config.api_url, 'https://tms.example.org/api')
        self.assertEqual(export_config.primary_key, 'id')
        self.assertEqual(export_config.output_headers, ['id', 'title', 'people', 'classification', 'dated'])
        self.assertEqual(export_config.required_fields, ['title', 'people'])
        self.assertEqual(export_config.enumerated_fields, ['classification'])
        self.assertEqual(export_config.debug_limit, 10)
        self.assertTrue(export_config.warnings.singleton_fields)
        self.assertTrue(export_config.warnings.unused_fields)

    def test_defaults(self) -> None:
        export_config: ExportConfig = ExportConfig.from_json(minimal_config())
        self.assertIsNone(export_config.debug_limit)
        self.assertFalse(export_config.warnings.missing_fields)
        self.assertEqual(export_config.max_consecutive_item_failures, 25)
        self.assertEqual(export_config.request_pause_seconds, 0.2)

    def test_unbounded_item_failures(self) -> None:
        export_config: ExportConfig = ExportConfig.from_json(minimal_config(maxConsecutiveItemFailures=None))
        self.assertIsNone(export_config.max_consecutive_item_failures)

    def test_requires_exactly_one_primary_key(self) -> None:
        """
        Checks that zero or two primary keys are rejected.
        """
        with self.assertRaises(ConfigurationError):
            ExportConfig.from_json(minimal_config(fields=[{'name': 'id'}, {'name': 'title'}]))
        with self.assertRaises(ConfigurationError):
            ExportConfig.from_json(
                minimal_config(fields=[{'name': 'id', 'primaryKey': True}, {'name': 'title', 'primaryKey': True}])
            )

    def test_rejects_bad_values(self) -> None:
        bad_configs: list[dict[str, object]] = [
            minimal_config(fields=[]),
            minimal_config(fields=[{'name': 'id', 'primaryKey': True}, {'name': 'id'}]),
            minimal_config(apiURL=''),
            minimal_config(outputDirectory=None),
            minimal_config(debug={'limit': 0}),
            minimal_config(debug={'limit': 'ten'}),
            minimal_config(maxConsecutiveItemFailures=0),
            minimal_config(requestPauseSeconds=-1),
        ]
        for bad_config in bad_configs:
            with self.subTest(bad_config=bad_config):
                with self.assertRaises(ConfigurationError):
                    ExportConfig.from_json(bad_config)

    def test_rejects_non_object(self) -> None:
        with self.assertRaises(ConfigurationError):
            ExportConfig.from_json(['not', 'a', 'dict'])  # type: ignore[arg-type]


class TestCredentials(unittest.TestCase):
    """
    Tests loading credentials from a file or env-vars.
    """

    def test_load_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path: Path = Path(tmp) / 'credentials.json'
            path.write_text(json.dumps({'key': 'KEY', 'username': 'user', 'password': 'pass'}), encoding='utf-8')
            credentials: Credentials = Credentials.load(path)
        self.assertEqual(credentials, Credentials(key='KEY', username='user', password='pass'))

    def test_load_from_env(self) -> None:
        env: dict[str, str] = {'TMS_API_KEY': 'ENVKEY', 'TMS_USERNAME': 'envuser', 'TMS_PASSWORD': 'envpass'}
        with mock.patch.dict(os.environ, env):
            credentials: Credentials = Credentials.load(None)
        self.assertEqual(credentials.key, 'ENVKEY')
        self.assertEqual(credentials.username, 'envuser')

    def test_missing_file_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            Credentials.load(Path('/nonexistent/credentials.json'))


if __name__ == '__main__':
    unittest.main()

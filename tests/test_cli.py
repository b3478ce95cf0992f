"""Tests for the csa command line interface."""

import json
import pickle

from click.testing import CliRunner
from conftest import ConstantModel, outlier_trace

from callstack_anomaly.array_store import ARRAYS_FILE_NAME
from callstack_anomaly.cli.main import cli


def write_trace(path, intervals):
    path.write_text(json.dumps([item.model_dump() for item in intervals]))
    return path


class TestCLIEncode:
    """Test the encode command."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_encode(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())

        result = self.runner.invoke(cli, ['encode', str(trace), '-s', str(tmp_path / 'store'), '--depth', '2'])

        assert result.exit_code == 0, result.output
        assert 'Encoded 2 root calls' in result.output
        assert 'Array shape: 3 x 2 (dense)' in result.output

    def test_encode_json_native(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())

        result = self.runner.invoke(
            cli,
            ['encode', str(trace), '-s', str(tmp_path / 'store'), '-d', '2', '--encoding', 'native', '--json'],
        )

        assert result.exit_code == 0, result.output
        info = json.loads(result.output)
        assert info['record_count'] == 2
        assert info['encoding_mode'] == 'native'

    def test_encode_existing_store_requires_force(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())
        args = ['encode', str(trace), '-s', str(tmp_path / 'store'), '-d', '2']
        self.runner.invoke(cli, args)

        result = self.runner.invoke(cli, args)
        assert result.exit_code == 1
        assert 'already exists' in result.output

        result = self.runner.invoke(cli, args + ['--force'])
        assert result.exit_code == 0, result.output

    def test_encode_default_store_in_cache(self, tmp_path, temp_cache_dir):
        trace = write_trace(tmp_path / 'mytrace.json', outlier_trace())

        result = self.runner.invoke(cli, ['encode', str(trace), '-d', '2', '--json'])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)['path'].startswith(temp_cache_dir)

    def test_encode_no_roots(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())

        result = self.runner.invoke(cli, ['encode', str(trace), '-s', str(tmp_path / 'store'), '-d', '9'])

        assert result.exit_code == 1
        assert 'No root calls found at depth 9' in result.output
        assert not (tmp_path / 'store').exists()

    def test_encode_invalid_input(self, tmp_path):
        trace = tmp_path / 'trace.json'
        trace.write_text('[{"start": 0}]')

        result = self.runner.invoke(cli, ['encode', str(trace), '-s', str(tmp_path / 'store')])

        assert result.exit_code == 1
        assert 'Error:' in result.output


class TestCLIDetect:
    """Test the detect, analyze and info commands."""

    def setup_method(self):
        self.runner = CliRunner()

    def encode(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())
        store = tmp_path / 'store'
        result = self.runner.invoke(cli, ['encode', str(trace), '-s', str(store), '-d', '2'])
        assert result.exit_code == 0, result.output
        return store

    def test_detect_statistical(self, tmp_path):
        store = self.encode(tmp_path)

        result = self.runner.invoke(cli, ['detect', str(store), '-n', '0'])

        assert result.exit_code == 0, result.output
        assert 'Detector: statistical' in result.output
        assert 'Anomalies: 1' in result.output
        assert 't=2000 dur=1090 depth=2 addr=0x10 score=1.000' in result.output
        assert 't=100 ' not in result.output

    def test_detect_show_all_json(self, tmp_path):
        store = self.encode(tmp_path)

        result = self.runner.invoke(cli, ['detect', str(store), '-n', '0', '--json'])

        assert result.exit_code == 0, result.output
        response = json.loads(result.output)
        assert response['anomaly_count'] == 1
        assert [item['score'] for item in response['scores']] == [0.0, 1.0]

    def test_detect_missing_store(self, tmp_path):
        result = self.runner.invoke(cli, ['detect', str(tmp_path / 'missing')])

        assert result.exit_code == 1
        assert 'csa encode' in result.output

    def test_detect_with_model(self, tmp_path):
        store = self.encode(tmp_path)
        model_file = tmp_path / 'model.pkl'
        with open(model_file, 'wb') as f:
            pickle.dump(ConstantModel(0.9), f)

        result = self.runner.invoke(cli, ['export-model', str(model_file), str(tmp_path / 'model'), '-s', str(store)])
        assert result.exit_code == 0, result.output
        assert 'Exported model container' in result.output

        result = self.runner.invoke(cli, ['detect', str(store), '--model', str(tmp_path / 'model'), '--json'])
        assert result.exit_code == 0, result.output
        response = json.loads(result.output)
        assert response['detector'] == 'model'
        assert response['anomaly_count'] == 2

    def test_detect_writes_metrics(self, tmp_path):
        store = self.encode(tmp_path)
        metrics_file = tmp_path / 'csa.prom'

        result = self.runner.invoke(cli, ['detect', str(store), '--metrics-file', str(metrics_file)])

        assert result.exit_code == 0, result.output
        assert 'csa_records_scored_total' in metrics_file.read_text()

    def test_detect_corrupt_store_writes_error_metrics(self, tmp_path):
        store = self.encode(tmp_path)
        (store / ARRAYS_FILE_NAME).write_bytes(b'')
        metrics_file = tmp_path / 'csa.prom'

        result = self.runner.invoke(cli, ['detect', str(store), '--metrics-file', str(metrics_file)])

        assert result.exit_code == 1
        assert 'Error:' in result.output
        metrics = metrics_file.read_text()
        assert 'csa_errors_total{error_type="record_decode"}' in metrics
        assert 'csa_analysis_runs_total{analysis_type="statistical",status="error"}' in metrics

    def test_analyze(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())
        args = ['analyze', str(trace), '-s', str(tmp_path / 'store'), '-d', '2', '-n', '0', '--all']

        result = self.runner.invoke(cli, args)

        assert result.exit_code == 0, result.output
        assert 'Records: 2 (2 scored)' in result.output
        assert 't=100 dur=1000 depth=2 addr=0x10 score=0.000' in result.output
        assert (tmp_path / 'store').exists()

    def test_analyze_no_roots(self, tmp_path):
        trace = write_trace(tmp_path / 'trace.json', outlier_trace())

        result = self.runner.invoke(cli, ['analyze', str(trace), '-s', str(tmp_path / 'store'), '-d', '7'])

        assert result.exit_code == 1
        assert 'Analysis aborted' in result.output

    def test_info(self, tmp_path):
        store = self.encode(tmp_path)

        result = self.runner.invoke(cli, ['info', str(store), '--addresses'])

        assert result.exit_code == 0, result.output
        assert 'Records: 2' in result.output
        assert 'Array shape: 3 x 2 (2 addresses)' in result.output
        assert '0x20: 1' in result.output

    def test_info_missing_store(self, tmp_path):
        result = self.runner.invoke(cli, ['info', str(tmp_path)])

        assert result.exit_code == 1
        assert 'Error:' in result.output


class TestCLIMain:
    """Test the command group itself."""

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, [])

        assert result.exit_code == 0
        for command in ('encode', 'detect', 'analyze', 'info', 'export-model'):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ['--version'])

        assert result.exit_code == 0
        assert 'CSA' in result.output

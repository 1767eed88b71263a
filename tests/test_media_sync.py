import os
import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from media_sync import media_sync as app
from media_sync.config_manager import SyncSettings
from media_sync.ui import SimpleUIManager
from tests.mocks.mock_ssh import RecordingStrategy

EPISODES = [f"Breaking.Bad.S01E{i:02d}.mkv" for i in range(1, 11)]
ENV_KEYS = ['SSH_HOST', 'SSH_USER', 'SSH_PORT', 'LOCAL_SHOWS_DIR', 'LOCAL_MOVIES_DIR', 'LOCAL_SOURCE',
            'REMOTE_BASE_PATH', 'SYNC_PROFILE', 'WORKERS', 'TRANSFER_MODE', 'ALIAS_FILE', 'DRY_RUN']


@pytest.fixture
def library(tmp_path):
    root = tmp_path / "Shows"
    root.mkdir()
    for name in EPISODES:
        (root / name).write_text("x")
    (root / "Breaking.Bad.S01E01.srt").write_text("x")
    (root / "Breaking.Bad.S01E01.sample.mkv").write_text("x")
    return root


def make_settings(local_dir, **overrides):
    values = dict(kind='shows', host='media.lan', user='pi', port=2222, local_dir=local_dir,
                  remote_base='/mnt/media', workers=3)
    values.update(overrides)
    return SyncSettings(**values)


class TestMediaSync:

    def test_successful_run(self, library):
        strategy = RecordingStrategy()
        code = app.MediaSync(make_settings(library), SimpleUIManager(), lambda s: strategy).run()

        assert code == app.EXIT_OK
        assert strategy.opened
        assert strategy.close_calls == 1
        assert strategy.directory_batches == [["/mnt/media/Shows/Breaking Bad/Season 1"]]
        assert len(strategy.copied) == 11

    def test_partial_failure_is_non_zero(self, library):
        strategy = RecordingStrategy(fail_on={EPISODES[6]})
        code = app.MediaSync(make_settings(library), SimpleUIManager(), lambda s: strategy).run()

        assert code == app.EXIT_FAILURE
        assert len(strategy.copied) == 10
        assert strategy.close_calls == 1

    def test_directory_barrier_failure_copies_nothing(self, library):
        strategy = RecordingStrategy(fail_directories=True)
        ui = MagicMock()
        code = app.MediaSync(make_settings(library), ui, lambda s: strategy).run()

        assert code == app.EXIT_FAILURE
        assert strategy.copied == []
        assert strategy.close_calls == 1
        report = ui.show_summary.call_args.args[1]
        assert report.failed == 11

    def test_dry_run_opens_no_connection(self, library):
        factory = MagicMock()
        code = app.MediaSync(make_settings(library, dry_run=True), SimpleUIManager(), factory).run()

        assert code == app.EXIT_OK
        factory.assert_not_called()

    def test_nothing_to_do(self, tmp_path):
        factory = MagicMock()
        code = app.MediaSync(make_settings(tmp_path), SimpleUIManager(), factory).run()

        assert code == app.EXIT_OK
        factory.assert_not_called()

    def test_unexpected_error_still_closes(self, library):
        strategy = RecordingStrategy()
        strategy.ensure_directories = MagicMock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            app.MediaSync(make_settings(library), SimpleUIManager(), lambda s: strategy).run()
        assert strategy.close_calls == 1

    def test_alias_file_is_used(self, library, tmp_path):
        alias_file = tmp_path / "aliases.txt"
        alias_file.write_text("Breaking Bad = Breaking Bad (2008)\n")
        strategy = RecordingStrategy()
        settings = make_settings(library, alias_file=alias_file)
        app.MediaSync(settings, SimpleUIManager(), lambda s: strategy).run()

        assert strategy.directory_batches == [["/mnt/media/Shows/Breaking Bad (2008)/Season 1"]]


@pytest.fixture
def cli_env(tmp_path, monkeypatch, restore_root_logger):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr('media_sync.config_manager.DEFAULT_CONFIG_PATH', tmp_path / "absent.ini")
    monkeypatch.setattr('media_sync.media_sync.tempfile.gettempdir', lambda: str(tmp_path))
    previous = signal.getsignal(signal.SIGTERM)
    yield ['--simple', '--log-dir', str(tmp_path / "logs")]
    signal.signal(signal.SIGTERM, previous)


class TestMain:

    def test_version(self, capsys):
        assert app.main(['--version']) == 0
        assert app.__version__ in capsys.readouterr().out

    def test_kind_is_required(self, cli_env):
        with pytest.raises(SystemExit) as exc:
            app.main(cli_env)
        assert exc.value.code == 2

    def test_missing_host(self, cli_env, library):
        assert app.main(cli_env + ['-l', str(library)], kind='shows') == 2

    def test_non_numeric_workers(self, cli_env, library):
        assert app.main(cli_env + ['-h', 'media.lan', '-l', str(library), '-w', 'lots'], kind='shows') == 2

    def test_missing_local_directory(self, cli_env, tmp_path):
        assert app.main(cli_env + ['-h', 'media.lan', '-l', str(tmp_path / "nope")], kind='shows') == 2

    def test_config_file_is_created_from_template(self, cli_env, tmp_path, library):
        config_path = tmp_path / "conf" / "config.ini"
        app.main(cli_env + ['--config', str(config_path), '-h', 'media.lan', '-l', str(library), '-n'], kind='shows')
        assert "[REMOTE]" in config_path.read_text()

    def test_config_error_writes_nothing(self, cli_env, tmp_path, library):
        config_path = tmp_path / "conf" / "config.ini"
        assert app.main(cli_env + ['--config', str(config_path), '-l', str(library)], kind='shows') == 2
        assert not config_path.exists()
        assert not (tmp_path / "logs").exists()

    def test_dry_run(self, cli_env, library):
        with patch('media_sync.media_sync.get_transfer_strategy') as factory:
            code = app.main(cli_env + ['-h', 'media.lan', '-u', 'pi', '-l', str(library), '-n'], kind='shows')
        assert code == 0
        factory.assert_not_called()

    @patch('media_sync.config_manager.shutil.which', return_value='/usr/bin/tool')
    def test_failed_transfer_exit_code(self, mock_which, cli_env, library):
        strategy = RecordingStrategy(fail_on={EPISODES[0]})
        with patch('media_sync.media_sync.get_transfer_strategy', return_value=strategy):
            code = app.main(cli_env + ['-h', 'media.lan', '-u', 'pi', '-l', str(library), '-w', '2'], kind='shows')
        assert code == 1
        assert strategy.close_calls == 1

    @patch('media_sync.config_manager.shutil.which', return_value='/usr/bin/tool')
    def test_held_lock(self, mock_which, cli_env, library, tmp_path):
        (tmp_path / "media_sync_shows_pi.lock").write_text(str(os.getppid()))
        code = app.main(cli_env + ['-h', 'media.lan', '-u', 'pi', '-l', str(library)], kind='shows')
        assert code == 2

    @patch('media_sync.config_manager.shutil.which', return_value='/usr/bin/tool')
    def test_sync_movies_entry_point(self, mock_which, cli_env, tmp_path, monkeypatch):
        movies = tmp_path / "Movies"
        movies.mkdir()
        (movies / "Heat (1995).mkv").write_text("x")
        strategy = RecordingStrategy()
        monkeypatch.setattr('sys.argv', ['sync-movies'] + cli_env + ['-h', 'media.lan', '-u', 'pi', '-l', str(movies)])
        with patch('media_sync.media_sync.get_transfer_strategy', return_value=strategy):
            assert app.sync_movies() == 0
        assert strategy.directory_batches == [["/mnt/media/Movies"]]


def test_parser_uses_h_for_host():
    args = app.build_parser('shows').parse_args(['-h', 'media.lan', '-p', '2200', '--profile', 'lan'])
    assert args.host == 'media.lan'
    assert args.port == '2200'
    assert args.profile == 'lan'

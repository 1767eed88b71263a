import pytest
from unittest.mock import MagicMock

import paramiko

from media_sync.models import TransferItem
from media_sync.transfer_strategies import SFTPStrategy, TransferOutcome
from media_sync.utils import RemoteTransferError
from tests.mocks.mock_ssh import MockSSHConnectionPool

DEST_DIR = "/mnt/media/Shows/Breaking Bad/Season 1"
ITEM = TransferItem(source_path="/library/Breaking.Bad.S01E01.mkv", dest_dir=DEST_DIR)


@pytest.fixture
def pool():
    return MockSSHConnectionPool(host="media.lan", port=2222, username="pi")


class TestSFTPStrategy:

    def test_upload_goes_through_part_file(self, pool):
        outcome = SFTPStrategy(pool).copy_file(ITEM)

        assert outcome is TransferOutcome.TRANSFERRED
        assert pool.mock_sftp_client.files == {f"{DEST_DIR}/Breaking.Bad.S01E01.mkv": ITEM.source_path}

    def test_existing_file_is_skipped(self, pool):
        pool.mock_sftp_client.files[ITEM.dest_path] = "earlier run"
        outcome = SFTPStrategy(pool).copy_file(ITEM)

        assert outcome is TransferOutcome.SKIPPED_EXISTING
        assert pool.mock_sftp_client.files[ITEM.dest_path] == "earlier run"

    def test_failed_upload_raises(self, pool):
        pool.mock_sftp_client.fail_put = True
        with pytest.raises(RemoteTransferError):
            SFTPStrategy(pool).copy_file(ITEM)
        assert pool.mock_sftp_client.files == {}

    def test_directories_in_one_exec(self, pool):
        directories = [DEST_DIR, "/mnt/media/Shows/Dark/Season 2", DEST_DIR]
        count = SFTPStrategy(pool).ensure_directories(directories)

        assert count == 2
        ssh = pool.mock_ssh_client
        assert ssh.commands == ["xargs -0 mkdir -p --"]
        assert ssh.stdin_payloads() == [
            b"/mnt/media/Shows/Breaking Bad/Season 1\0/mnt/media/Shows/Dark/Season 2\0"
        ]

    def test_directory_failure_raises(self, pool):
        pool.mock_ssh_client.exit_status = 1
        pool.mock_ssh_client.stderr = b"mkdir: Permission denied"
        pool.mock_sftp_client.fail_mkdir = True
        with pytest.raises(RemoteTransferError, match="Permission denied"):
            SFTPStrategy(pool).ensure_directories([DEST_DIR])

    def test_internal_sftp_account_falls_back_on_exit_status(self, pool):
        # The channel opens but the server runs internal-sftp instead of the command
        pool.mock_ssh_client.exit_status = 1
        count = SFTPStrategy(pool).ensure_directories([DEST_DIR, "/mnt/media/Shows/Dark/Season 2"])

        assert count == 2
        assert pool.mock_ssh_client.commands == ["xargs -0 mkdir -p --"]
        assert {DEST_DIR, "/mnt/media/Shows/Dark/Season 2"} <= pool.mock_sftp_client.dirs

    def test_sftp_only_account_falls_back_to_mkdir(self, pool):
        pool.mock_ssh_client.exec_command = MagicMock(side_effect=paramiko.SSHException("exec not allowed"))
        count = SFTPStrategy(pool).ensure_directories([DEST_DIR])

        assert count == 1
        assert {"/mnt", "/mnt/media", "/mnt/media/Shows", "/mnt/media/Shows/Breaking Bad", DEST_DIR} <= pool.mock_sftp_client.dirs

    def test_open_tolerates_unreachable_host(self):
        pool = MagicMock()
        pool.get_connection.side_effect = OSError("Connection refused")
        SFTPStrategy(pool).open()

    def test_close_releases_pool(self, pool):
        strategy = SFTPStrategy(pool)
        strategy.close()
        assert pool.closed

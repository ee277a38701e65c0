import os
import unittest
from io import StringIO
from unittest.mock import AsyncMock, MagicMock, patch

from cognito_backup import cli
from cognito_backup.pipeline import BackupError, RecordOutcome, RestoreReport


class TestArgumentParsing(unittest.TestCase):
    """Test argument parsing for every command."""

    def test_backup_users_defaults(self):
        args = cli.parse_arguments(["backup-users", "us-east-1_test"])

        self.assertEqual(args.command, "backup-users")
        self.assertEqual(args.user_pool_id, "us-east-1_test")
        self.assertIsNone(args.file)
        self.assertIsNone(args.region)
        self.assertEqual(args.concurrency, cli.DEFAULT_CONCURRENCY)
        self.assertFalse(args.stack_trace)

    def test_options_after_command(self):
        args = cli.parse_arguments([
            "backup-groups", "us-east-1_test",
            "--region", "eu-west-2",
            "--profile", "backup",
            "--file", "groups.json",
            "--stack-trace",
        ])

        self.assertEqual(args.region, "eu-west-2")
        self.assertEqual(args.profile, "backup")
        self.assertEqual(args.file, "groups.json")
        self.assertTrue(args.stack_trace)

    def test_backup_all_users_dir(self):
        args = cli.parse_arguments(["backup-all-users", "--dir", "exports"])
        self.assertEqual(args.dir, "exports")

    def test_restore_users_requires_temp_password(self):
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            with self.assertRaises(SystemExit) as cm:
                cli.parse_arguments(["restore-users", "us-east-1_test"])

        self.assertNotEqual(cm.exception.code, 0)
        self.assertIn("temp_password", mock_stderr.getvalue())

    def test_restore_users(self):
        args = cli.parse_arguments(["restore-users", "us-east-1_test", "Temp#Pass1", "--rate", "2"])

        self.assertEqual(args.temp_password, "Temp#Pass1")
        self.assertEqual(args.rate, 2.0)
        self.assertFalse(args.allow_failures)

    def test_command_is_required(self):
        with patch("sys.stderr", new_callable=StringIO):
            with self.assertRaises(SystemExit):
                cli.parse_arguments([])

    def test_concurrency_must_be_positive(self):
        with patch("sys.stderr", new_callable=StringIO):
            with self.assertRaises(SystemExit):
                cli.parse_arguments(["backup-users", "pool", "--concurrency", "0"])

    @patch("cognito_backup.cli.CognitoBackup")
    def test_rate_sets_restore_interval(self, mock_backup):
        cli.build_backup(cli.parse_arguments(["restore-groups", "pool", "--rate", "8"]))

        self.assertEqual(mock_backup.call_args.kwargs["restore_min_interval"], 0.125)


def report(*failed_keys, total=3):
    outcomes = [RecordOutcome(f"u{i}") for i in range(total - len(failed_keys))]
    outcomes += [RecordOutcome(key, error=RuntimeError("boom")) for key in failed_keys]
    return RestoreReport(outcomes)


@patch("cognito_backup.cli.configure_logging")
class TestMain(unittest.TestCase):

    def setUp(self):
        self.backup = MagicMock()
        self.backup.backup_users = AsyncMock(return_value=5)
        self.backup.backup_groups = AsyncMock(return_value=2)
        self.backup.backup_all_users = AsyncMock(return_value={"pool-1": os.path.join("out", "pool-1.json")})
        self.backup.restore_users = AsyncMock(return_value=report())
        self.backup.restore_groups = AsyncMock(return_value=report())
        build_patch = patch("cognito_backup.cli.build_backup", return_value=self.backup)
        build_patch.start()
        self.addCleanup(build_patch.stop)

    def test_backup_users_default_file(self, mock_logging):
        self.assertEqual(cli.main(["backup-users", "us-east-1_abc"]), 0)

        self.backup.backup_users.assert_awaited_once_with("us-east-1_abc", "us-east-1_abc.json")
        self.backup.upload_to_s3.assert_not_called()

    def test_backup_groups_uploads_to_s3(self, mock_logging):
        exit_code = cli.main(["backup-groups", "us-east-1_abc", "--s3-bucket", "bucket", "--compress"])

        self.assertEqual(exit_code, 0)
        self.backup.backup_groups.assert_awaited_once_with("us-east-1_abc", "us-east-1_abc_groups.json")
        self.backup.upload_to_s3.assert_called_once_with("us-east-1_abc_groups.json", "bucket", None, compress=True)

    def test_backup_all_users(self, mock_logging):
        self.assertEqual(cli.main(["backup-all-users", "--dir", "out"]), 0)
        self.backup.backup_all_users.assert_awaited_once_with("out")

    def test_restore_users_uses_file_option(self, mock_logging):
        exit_code = cli.main(["restore-users", "us-east-1_abc", "Temp#Pass1", "--file", "backup.json"])

        self.assertEqual(exit_code, 0)
        self.backup.restore_users.assert_awaited_once_with("us-east-1_abc", "backup.json", "Temp#Pass1")

    def test_restore_failures_fail_the_job(self, mock_logging):
        self.backup.restore_users.return_value = report("u9")

        with self.assertLogs("cognito_backup.cli", level="ERROR") as logs:
            exit_code = cli.main(["restore-users", "pool", "pw"])

        self.assertEqual(exit_code, 1)
        self.assertIn("1 of 3 users failed to restore", logs.output[0])

    def test_restore_failures_allowed(self, mock_logging):
        self.backup.restore_groups.return_value = report("g1")

        self.assertEqual(cli.main(["restore-groups", "pool", "--allow-failures"]), 0)
        self.backup.restore_groups.assert_awaited_once_with("pool", "pool_groups.json")

    def test_fatal_error_single_line(self, mock_logging):
        self.backup.restore_users.side_effect = BackupError("Backup file not found: pool.json")

        with self.assertLogs("cognito_backup.cli", level="ERROR") as logs:
            exit_code = cli.main(["restore-users", "pool", "pw"])

        self.assertEqual(exit_code, 1)
        self.assertEqual(logs.records[0].getMessage(), "Error: Backup file not found: pool.json")
        self.assertIsNone(logs.records[0].exc_info)

    def test_fatal_error_with_stack_trace(self, mock_logging):
        self.backup.backup_users.side_effect = BackupError("More than 60 user pools is not yet supported")

        with self.assertLogs("cognito_backup.cli", level="ERROR") as logs:
            exit_code = cli.main(["backup-users", "pool", "--stack-trace"])

        self.assertEqual(exit_code, 1)
        self.assertIsNotNone(logs.records[0].exc_info)

    def test_keyboard_interrupt(self, mock_logging):
        with patch("cognito_backup.cli.run", side_effect=KeyboardInterrupt):
            self.assertEqual(cli.main(["backup-users", "pool"]), 130)

    def test_logging_configured_from_arguments(self, mock_logging):
        cli.main(["backup-users", "pool", "--log-level", "DEBUG", "--log-file", ""])

        mock_logging.assert_called_once_with("DEBUG", "")


if __name__ == "__main__":
    unittest.main()

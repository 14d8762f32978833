import os
import tempfile
import unittest

from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path, open_sqlite_temp_connection


class TempDbHelperTest(unittest.TestCase):
    def test_temp_db_create_and_cleanup(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        db_path = sandbox.db_path
        temp_dir = sandbox.temp_dir

        self.assertTrue(os.path.exists(temp_dir))
        self.assertTrue(os.path.realpath(db_path).startswith(os.path.realpath(tempfile.gettempdir())))

        conn = open_sqlite_temp_connection(db_path)
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS sanity (id INTEGER PRIMARY KEY, value TEXT)")
            conn.execute("INSERT INTO sanity (value) VALUES ('ok')")
            row = conn.execute("SELECT COUNT(*) FROM sanity").fetchone()
            self.assertEqual(int(row[0]), 1)
        finally:
            conn.close()

        sandbox.cleanup()
        self.assertFalse(os.path.exists(db_path))
        self.assertFalse(os.path.exists(temp_dir))

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.getcwd(), "assinaturas_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)

    def test_disallow_application_database_name(self) -> None:
        app_db = os.path.join(tempfile.gettempdir(), "assinaturas.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(app_db)

    def test_config_overrides_point_at_the_sandbox(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_config")
        self.addCleanup(sandbox.cleanup)

        class _Base:
            DB_PATH = "database/assinaturas.db"
            BILLING_SCHEDULER_ENABLED = True

        config = sandbox.make_config(_Base, TESTING=True)
        self.assertEqual(config.DB_PATH, sandbox.db_path)
        self.assertFalse(config.BILLING_SCHEDULER_ENABLED)
        self.assertTrue(config.TESTING)


if __name__ == "__main__":
    unittest.main()

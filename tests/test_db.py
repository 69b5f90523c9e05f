import pytest
from unittest.mock import MagicMock, patch
from psycopg import OperationalError

from wallet_analytics.common import db


def test_apply_schema_executes_file(tmp_path):
    """Test apply_schema runs the schema file through a write cursor"""
    schema = tmp_path / "schema.sql"
    schema.write_text("CREATE TABLE IF NOT EXISTS wallets (wallet_id TEXT PRIMARY KEY);")

    with patch('wallet_analytics.common.db.get_cursor') as mock_get_cursor:
        mock_cursor = MagicMock()
        mock_get_cursor.return_value.__enter__.return_value = mock_cursor

        db.apply_schema(str(schema))

        mock_get_cursor.assert_called_once_with()
        mock_cursor.execute.assert_called_once_with(
            "CREATE TABLE IF NOT EXISTS wallets (wallet_id TEXT PRIMARY KEY);"
        )


def test_apply_schema_missing_file(tmp_path):
    with patch('wallet_analytics.common.db.get_cursor') as mock_get_cursor:
        with pytest.raises(FileNotFoundError):
            db.apply_schema(str(tmp_path / "absent.sql"))

        mock_get_cursor.assert_not_called()


def test_default_schema_path_exists():
    """Test the bundled schema defines the analytics tables"""
    with open(db.SCHEMA_PATH, encoding="utf-8") as f:
        sql = f.read()

    for table in ("wallets", "processed_transactions", "wallet_activity_metrics",
                  "wallet_adoption_stages", "wallet_cohorts", "wallet_productivity_scores"):
        assert table in sql


def test_default_schema_is_idempotent():
    with open(db.SCHEMA_PATH, encoding="utf-8") as f:
        sql = f.read().upper()

    assert sql.count("CREATE TABLE") == sql.count("CREATE TABLE IF NOT EXISTS")


def test_connection_check_retries_then_reports():
    """Test the health check retries transient errors before succeeding"""
    with patch('wallet_analytics.common.db.get_pool') as mock_get_pool, patch('time.sleep'):
        mock_cursor = MagicMock()
        mock_cursor.execute.side_effect = [OperationalError("Connection lost"), None]
        mock_cursor.fetchall.return_value = [{'test': 1}]
        conn = mock_get_pool.return_value.connection.return_value.__enter__.return_value
        conn.cursor.return_value.__enter__.return_value = mock_cursor

        assert db.test_connection() is True
        assert mock_cursor.execute.call_count == 2


def test_connection_check_fails_closed():
    with patch('wallet_analytics.common.db.execute_with_retry',
               side_effect=OperationalError("Connection failed")):
        assert db.test_connection() is False

from unittest.mock import Mock

from sqlalchemy.dialects import postgresql

from sophia_api.services.dedup_service import UpdateDeduplicator


class TestRecordSeen:
    def test_first_insert_is_new(self, db_session):
        db_session.execute.return_value = Mock(rowcount=1)

        assert UpdateDeduplicator().record_seen(db_session, "telegram", "1001") is True
        db_session.commit.assert_called_once()

    def test_conflict_means_duplicate(self, db_session):
        db_session.execute.return_value = Mock(rowcount=0)

        assert UpdateDeduplicator().record_seen(db_session, "telegram", "1001") is False

    def test_storage_error_lets_update_through(self, db_session):
        db_session.execute.side_effect = RuntimeError("connection reset")

        assert UpdateDeduplicator().record_seen(db_session, "whatsapp", "SM123") is True
        db_session.rollback.assert_called_once()

    def test_empty_id_is_not_recorded(self, db_session):
        assert UpdateDeduplicator().record_seen(db_session, "telegram", "") is True
        db_session.execute.assert_not_called()

    def test_insert_targets_platform_and_external_id(self, db_session):
        db_session.execute.return_value = Mock(rowcount=1)

        UpdateDeduplicator().record_seen(db_session, "whatsapp", "SM999")

        stmt = db_session.execute.call_args[0][0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["platform"] == "whatsapp"
        assert params["external_id"] == "SM999"


class TestIsDuplicate:
    def test_existing_row(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = Mock()
        assert UpdateDeduplicator().is_duplicate(db_session, "telegram", "5") is True

    def test_missing_row(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert UpdateDeduplicator().is_duplicate(db_session, "telegram", "5") is False

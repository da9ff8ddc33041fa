"""Tests for the shared model behaviour."""

from datetime import datetime, timezone

import pytest

from brdsync.models import Connection, FieldMappingRule, SyncMapping, WebhookRegistration


class TestToDict:
    def test_encrypted_columns_are_never_serialised(self):
        connection = Connection(
            id="conn-1",
            user_id="user-1",
            remote_site_id="cloud-1",
            access_token_enc="cipher-a",
            refresh_token_enc="cipher-r",
        )
        webhook = WebhookRegistration(
            id="hook-1", connection_id="conn-1", url="https://x", secret_enc="cipher-s"
        )

        assert Connection.encrypted_columns() == {"access_token_enc", "refresh_token_enc"}
        assert "access_token_enc" not in connection.to_dict()
        assert "refresh_token_enc" not in connection.to_dict()
        assert "secret_enc" not in webhook.to_dict()
        assert connection.to_dict()["remote_site_id"] == "cloud-1"

    def test_naive_timestamps_come_back_as_utc(self):
        mapping = SyncMapping(
            id="m-1",
            connection_id="conn-1",
            local_id="brd-1",
            remote_key="PROJ-1",
            last_synced_at=datetime(2024, 3, 1, 10, 0),
        )

        assert mapping.to_dict()["last_synced_at"] == "2024-03-01T10:00:00+00:00"

    def test_exclude(self):
        mapping = SyncMapping(id="m-1", local_id="brd-1", remote_key="PROJ-1")

        assert "local_id" not in mapping.to_dict(exclude={"local_id"})


class TestApplyChanges:
    def test_reports_changed_columns_only(self):
        rule = FieldMappingRule(
            id="r-1", source_field="title", target_field="summary", active=True
        )

        changed = rule.apply_changes(
            {"active": False, "target_field": "summary", "unknown": 1}
        )

        assert changed == ["active"]
        assert rule.active is False

    @pytest.mark.parametrize("key", ["id", "created_at", "updated_at"])
    def test_immutable_columns_are_kept(self, key):
        rule = FieldMappingRule(id="r-1", source_field="title", target_field="summary")

        assert rule.apply_changes({key: datetime.now(timezone.utc)}) == []

    def test_encrypted_columns_are_kept(self):
        connection = Connection(id="conn-1", access_token_enc="cipher-a")

        assert connection.apply_changes({"access_token_enc": "plain"}) == []
        assert connection.access_token_enc == "cipher-a"


def test_repr_shows_identifying_columns():
    mapping = SyncMapping(id="m-1", local_id="brd-1", remote_key="PROJ-1")

    assert repr(mapping) == "<SyncMapping(id='m-1', local_id='brd-1', remote_key='PROJ-1')>"

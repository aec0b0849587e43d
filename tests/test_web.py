"""
Tests for groupwarden/web/server.py
"""

from unittest.mock import patch

import pytest

from conftest import GROUP_ID, USER_ID
from groupwarden import config
from groupwarden.moderation.models import ActivityCounter, GroupRule, PunishmentRecord
from groupwarden.web import server


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "DOWNLOAD_KEY", "letmein")
    return server.flask_app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_key_required(client):
    assert client.get(f"/api/groups/{GROUP_ID}/activity").status_code == 403
    assert client.get(f"/api/groups/{GROUP_ID}/activity?key=wrong").status_code == 403


def test_activity_ranked(client):
    counters = {1: ActivityCounter(total=2), 2: ActivityCounter(total=9)}
    with patch.object(server, "load_activity", return_value=counters):
        response = client.get(f"/api/groups/{GROUP_ID}/activity?key=letmein")
    members = response.get_json()["members"]
    assert [member["user_id"] for member in members] == [2, 1]


def test_punishments_json_and_text(client):
    record = PunishmentRecord.create(GROUP_ID, USER_ID, "flood", "mute", 600, 2, timestamp=0.0)
    with patch.object(server, "load_punishments", return_value=[record]) as load:
        response = client.get(f"/api/groups/{GROUP_ID}/punishments?key=letmein&limit=500&user_id={USER_ID}")
        load.assert_called_once_with(GROUP_ID, server.MAX_RECORDS_LIMIT, USER_ID)
        assert response.get_json()["records"][0]["reason"] == "flood"

        text = client.get(f"/api/groups/{GROUP_ID}/punishments?key=letmein&format=text").get_data(as_text=True)
    assert "Мут 10 мин" in text
    assert "flood" in text


def test_punishments_bad_params(client):
    assert client.get(f"/api/groups/{GROUP_ID}/punishments?key=letmein&limit=x").status_code == 400
    assert client.get(f"/api/groups/{GROUP_ID}/punishments?key=letmein&user_id=abc").status_code == 400


def test_rules_export(client):
    with patch.object(server, "export_rule", return_value='{"enabled": true}'):
        response = client.get(f"/api/groups/{GROUP_ID}/rules?key=letmein")
    assert response.status_code == 200
    assert response.get_json() == {"enabled": True}

    with patch.object(server, "export_rule", return_value=None):
        assert client.get(f"/api/groups/{GROUP_ID}/rules?key=letmein").status_code == 404


def test_rules_import(client):
    rule = GroupRule(group_id=GROUP_ID, enabled=False)
    with patch.object(server, "import_rule", return_value=rule) as import_rule:
        response = client.put(f"/api/groups/{GROUP_ID}/rules?key=letmein", data='{"enabled": false}')
    import_rule.assert_called_once_with(GROUP_ID, '{"enabled": false}')
    assert response.get_json() == {"group_id": GROUP_ID, "enabled": False}

    with patch.object(server, "import_rule", side_effect=ValueError("bad")):
        response = client.put(f"/api/groups/{GROUP_ID}/rules?key=letmein", data="[]")
    assert response.status_code == 400
    assert response.get_json()["error"] == "bad"


def test_rules_delete(client):
    assert client.delete(f"/api/groups/{GROUP_ID}/rules").status_code == 403
    with patch.object(server, "delete_rule", return_value=True):
        assert client.delete(f"/api/groups/{GROUP_ID}/rules?key=letmein").status_code == 200
    with patch.object(server, "delete_rule", return_value=False):
        assert client.delete(f"/api/groups/{GROUP_ID}/rules?key=letmein").status_code == 404

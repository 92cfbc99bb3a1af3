# backend/tests/test_dq_latest.py
import uuid

import pytest

from study_app.core.config import settings
from study_app.core.routing import Step
from study_app.core.security import create_management_session_token
from study_app.db.init_db import seed_dataset_catalog
from study_app.models.audit import ThreadDataQualityLog
from study_app.models.chat import ChatThread, TaskSession
from study_app.models.dataset import Dataset
from study_app.models.enums import UserRole
from study_app.models.user import User

API = settings.API_STUDY_STR
URL = f"{API}/chat/thread/dq/latest"


@pytest.fixture()
def owner(db, make_participant):
    participant = make_participant("P001", step=Step.TASK1_CHAT, task_number=1)
    task_session = TaskSession(participant_id=participant.id, task_number=1)
    db.add(task_session)
    db.flush()
    db.add(ChatThread(task_session_id=task_session.id, lang_graph_thread_id="lg-1"))
    db.commit()
    return participant


@pytest.fixture()
def audit_rows(db):
    seed_dataset_catalog(db)
    population = db.query(Dataset).filter_by(key="world-population").one()
    population.file_size_bytes = 9007199254740993
    population.record_count = 2400
    db.add(ThreadDataQualityLog(
        lang_graph_thread_id="lg-1",
        indicators={"TIMELINESS": {"status": "NOT_EVALUATED", "text": "old"}},
        used_tables=[],
    ))
    db.flush()
    latest = ThreadDataQualityLog(
        lang_graph_thread_id="lg-1",
        indicators={"TIMELINESS": {"status": "OK", "text": "Data up to 2023."}},
        used_tables=["main.population", "main.unlisted"],
        main_sql="SELECT * FROM main.population",
        dq_sql="SELECT max(year) FROM main.population",
    )
    db.add(latest)
    db.commit()
    return latest


def _admin_cookie(db, role=UserRole.ADMIN):
    user = User(id=str(uuid.uuid4()), email=f"{role.value.lower()}@example.org", role=role.value)
    db.add(user)
    db.commit()
    return create_management_session_token(user.id)


class TestLatestDataQuality:
    """读取线程最新的数据质量审计记录"""

    def test_owner_reads_latest_with_datasets(self, client, owner, audit_rows, headers_for):
        response = client.get(URL, params={"threadId": "lg-1"}, headers=headers_for(owner))

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        data = response.json()["data"]
        assert data["id"] == audit_rows.id
        assert data["indicators"]["TIMELINESS"]["status"] == "OK"
        assert data["mainSql"] == "SELECT * FROM main.population"
        assert data["dqSql"] == "SELECT max(year) FROM main.population"
        assert data["createdAt"].endswith("Z")
        assert data["unmatchedTables"] == ["main.unlisted"]
        assert len(data["datasets"]) == 1
        dataset = data["datasets"][0]
        assert dataset["key"] == "world-population"
        assert dataset["tables"] == ["main.population"]
        assert dataset["fileSizeBytes"] == "9007199254740993"
        assert dataset["recordCount"] == 2400

    def test_no_log_yet(self, client, owner, headers_for):
        response = client.get(URL, params={"threadId": "lg-1"}, headers=headers_for(owner))

        assert response.json() == {"ok": True, "data": None}
        assert response.headers["cache-control"] == "no-store"

    def test_missing_thread_id(self, client, owner, headers_for):
        response = client.get(URL, headers=headers_for(owner))

        assert response.status_code == 400
        assert response.json()["error"] == "Missing threadId"
        assert response.headers["cache-control"] == "no-store"

    def test_other_participant_is_forbidden(self, client, owner, audit_rows, make_participant, headers_for):
        other = make_participant("P002", step=Step.TASK1_CHAT, task_number=1)

        response = client.get(URL, params={"threadId": "lg-1"}, headers=headers_for(other))

        assert response.status_code == 403
        assert response.headers["cache-control"] == "no-store"

    def test_log_for_unknown_thread(self, client, db, owner, headers_for):
        db.add(ThreadDataQualityLog(lang_graph_thread_id="lg-elsewhere", indicators={}, used_tables=[]))
        db.commit()

        response = client.get(URL, params={"threadId": "lg-elsewhere"}, headers=headers_for(owner))

        assert response.status_code == 404
        assert response.json()["error"] == "Thread not found in app DB."

    def test_admin_cookie_reads_any_thread(self, client, db, audit_rows):
        client.cookies.set(settings.MANAGEMENT_SESSION_COOKIE, _admin_cookie(db))

        response = client.get(URL, params={"threadId": "lg-1"})

        assert response.status_code == 200
        assert response.json()["data"]["id"] == audit_rows.id

    def test_non_admin_user_is_forbidden(self, client, db, audit_rows):
        client.cookies.set(settings.MANAGEMENT_SESSION_COOKIE, _admin_cookie(db, role=UserRole.RESEARCHER))

        response = client.get(URL, params={"threadId": "lg-1"})

        assert response.status_code == 403

    def test_anonymous_is_unauthorized(self, client, audit_rows):
        response = client.get(URL, params={"threadId": "lg-1"})

        assert response.status_code == 401
        assert response.json()["error"] == "Missing management session."

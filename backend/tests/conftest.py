# backend/tests/conftest.py
import os
import sys
import uuid

# 必需的配置项需要在导入 study_app 之前设置
os.environ.setdefault("AUTH_SECRET", "test-secret")
os.environ.setdefault("STUDY_OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DATASET_DATABASE_URL", "sqlite://")

# 将 backend 目录添加到 sys.path 中
backend_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if backend_path not in sys.path:
    sys.path.insert(0, backend_path)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import study_app.models  # 注册所有模型
from study_app.core.routing import Step
from study_app.core.security import create_study_token
from study_app.database import get_db
from study_app.db.base_class import Base
from study_app.db.init_db import seed_demo_study
from study_app.main import app
from study_app.models.enums import ParticipantStatus
from study_app.models.participant import Participant


@pytest.fixture()
def engine():
    """每个测试使用独立的内存SQLite数据库"""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def study(db):
    return seed_demo_study(db)


@pytest.fixture()
def make_participant(db, study):
    """按访问码、步骤和当前任务创建参与者"""

    def _make(
            access_code="P001",
            step=Step.WELCOME,
            task_number=None,
            side_panel_enabled=True,
            status=None,
            last_active_at=None,
    ):
        if status is None:
            status = ParticipantStatus.CREATED if step == Step.WELCOME else ParticipantStatus.STARTED
        participant = Participant(
            id=str(uuid.uuid4()),
            study_id=study.id,
            access_code=access_code,
            status=status.value,
            current_step=step.value,
            current_task_number=task_number,
            side_panel_enabled=side_panel_enabled,
            last_active_at=last_active_at,
        )
        db.add(participant)
        db.commit()
        db.refresh(participant)
        return participant

    return _make


def auth_headers(participant):
    token = create_study_token(participant.id, participant.access_code, participant.side_panel_enabled)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def headers_for():
    return auth_headers

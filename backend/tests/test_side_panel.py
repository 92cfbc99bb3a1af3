# backend/tests/test_side_panel.py
from datetime import timedelta

import pytest

from study_app.core.config import settings
from study_app.core.routing import Step
from study_app.core.timeutil import utcnow
from study_app.models.chat import ChatThread, SidePanelSpan, TaskSession
from study_app.models.participant import Participant
from study_app.services.side_panel import finalize_end_time

API = settings.API_STUDY_STR


@pytest.fixture()
def chatting(db, make_participant):
    participant = make_participant("P001", step=Step.TASK1_CHAT, task_number=1)
    db.add(TaskSession(participant_id=participant.id, task_number=1))
    db.commit()
    return participant


def _event(client, headers, is_open, thread_id=None):
    body = {"open": is_open}
    if thread_id is not None:
        body["langGraphThreadId"] = thread_id
    return client.post(f"{API}/side-panel/event", headers=headers, json=body).json()


def _task_session(db, participant):
    db.expire_all()
    return db.query(TaskSession).filter_by(participant_id=participant.id, task_number=1).one()


class TestSidePanelEvents:
    """侧边栏打开/关闭区间"""

    def test_double_open_counts_once(self, client, db, chatting, headers_for):
        headers = headers_for(chatting)

        first = _event(client, headers, True)
        second = _event(client, headers, True)

        assert first["ok"] is True
        assert first["ignored"] is False
        assert second["spanId"] == first["spanId"]
        assert _task_session(db, chatting).side_panel_open_count == 1
        assert db.query(SidePanelSpan).count() == 1

    def test_open_then_close(self, client, db, chatting, headers_for):
        headers = headers_for(chatting)
        opened = _event(client, headers, True)
        closed = _event(client, headers, False)
        closed_again = _event(client, headers, False)

        assert closed["spanId"] == opened["spanId"]
        assert closed_again["ignored"] is True

        task_session = _task_session(db, chatting)
        assert task_session.side_panel_open_count == 1
        assert task_session.side_panel_close_count == 1
        assert task_session.side_panel_open_ms >= 0
        span = db.query(SidePanelSpan).one()
        assert span.closed_at is not None
        assert span.closed_at >= span.opened_at

    def test_close_without_open_is_ignored(self, client, db, chatting, headers_for):
        response = _event(client, headers_for(chatting), False)

        assert response == {"ok": True, "ignored": True, "spanId": None}
        assert _task_session(db, chatting).side_panel_close_count == 0

    def test_close_with_stale_task_closes_latest_span_of_any_session(self, client, db, chatting, headers_for):
        headers = headers_for(chatting)
        opened = _event(client, headers, True)
        span = db.get(SidePanelSpan, opened["spanId"])
        span.opened_at = utcnow() - timedelta(seconds=5)
        participant = db.get(Participant, chatting.id)
        participant.current_step = Step.TASK2_CHAT.value
        participant.current_task_number = 2
        db.add(TaskSession(participant_id=participant.id, task_number=2))
        db.commit()

        closed = _event(client, headers, False)

        assert closed["ignored"] is False
        assert closed["spanId"] == opened["spanId"]
        task_session = _task_session(db, chatting)
        assert task_session.side_panel_close_count == 1
        assert task_session.side_panel_open_ms >= 5_000
        assert db.get(SidePanelSpan, opened["spanId"]).closed_at is not None

    def test_close_attaches_thread_to_unlinked_span(self, client, db, chatting, headers_for):
        headers = headers_for(chatting)
        opened = _event(client, headers, True)
        client.post(f"{API}/chat/thread/upsert", headers=headers, json={"langGraphThreadId": "lg-1"})
        client.post(
            f"{API}/chat/message/upsert",
            headers=headers,
            json={"langGraphThreadId": "lg-1", "message": {"id": "m1", "type": "human", "content": "hi"}},
        )

        _event(client, headers, False, thread_id="lg-1")

        db.expire_all()
        span = db.get(SidePanelSpan, opened["spanId"])
        thread = db.query(ChatThread).filter_by(lang_graph_thread_id="lg-1").one()
        assert span.chat_thread_id == thread.id
        assert span.opened_after_message_seq is None
        assert span.closed_after_message_seq == 1

    def test_open_outside_chat_step_is_ignored(self, client, db, make_participant, headers_for):
        participant = make_participant("P002", step=Step.PRE_SURVEY)

        response = _event(client, headers_for(participant), True)

        assert response["ignored"] is True
        assert db.query(SidePanelSpan).count() == 0

    def test_open_links_active_thread_and_sequence(self, client, db, chatting, headers_for):
        headers = headers_for(chatting)
        client.post(f"{API}/chat/thread/upsert", headers=headers, json={"langGraphThreadId": "lg-1"})
        client.post(
            f"{API}/chat/message/upsert",
            headers=headers,
            json={"langGraphThreadId": "lg-1", "message": {"id": "m1", "type": "human", "content": "hi"}},
        )

        _event(client, headers, True, thread_id="lg-1")

        db.expire_all()
        span = db.query(SidePanelSpan).one()
        thread = db.query(ChatThread).filter_by(lang_graph_thread_id="lg-1").one()
        assert span.chat_thread_id == thread.id
        assert span.opened_after_message_seq == 1

    def test_ready_finalizes_open_span(self, client, db, chatting, headers_for):
        headers = headers_for(chatting)
        _event(client, headers, True)

        response = client.post(f"{API}/task/1/ready", headers=headers)

        assert response.status_code == 200
        task_session = _task_session(db, chatting)
        span = db.query(SidePanelSpan).one()
        assert span.closed_at == task_session.chat_ended_at
        assert task_session.side_panel_close_count == 1

    def test_post_survey_submit_finalizes_open_span(self, client, db, make_participant, headers_for):
        participant = make_participant("P002", step=Step.TASK1_POST_SURVEY, task_number=1)
        task_session = TaskSession(participant_id=participant.id, task_number=1)
        db.add(task_session)
        db.commit()
        db.add(SidePanelSpan(task_session_id=task_session.id, opened_at=utcnow() - timedelta(seconds=10)))
        db.commit()
        headers = headers_for(participant)

        view = client.get(f"{API}/task/1/post", headers=headers).json()
        questions = {question["key"]: question for question in view["questions"]}
        answers = [
            {"questionId": questions["answer_trust"]["id"], "type": "SCALE_NRS", "value": 8},
            {"questionId": questions["data_timely"]["id"], "type": "SINGLE_CHOICE",
             "optionId": questions["data_timely"]["options"][0]["id"]},
            {"questionId": questions["answer"]["id"], "type": "TEXT", "text": "It grew."},
        ]
        response = client.post(f"{API}/task/1/post/submit", headers=headers, json={"answers": answers})

        assert response.status_code == 200
        db.expire_all()
        task_session = db.query(TaskSession).filter_by(participant_id=participant.id, task_number=1).one()
        span = db.query(SidePanelSpan).one()
        assert span.closed_at == task_session.post_survey_started_at
        assert task_session.side_panel_close_count == 1
        assert task_session.side_panel_open_ms >= 10_000


class TestFinalizeEndTime:
    """强制关闭时结束时间的选取顺序"""

    def test_prefers_chat_end(self):
        now = utcnow()
        task_session = TaskSession(chat_ended_at=now, ready_to_answer_at=now + timedelta(seconds=5))
        participant = Participant(last_active_at=now + timedelta(seconds=10))
        assert finalize_end_time(task_session, participant) == now

    def test_falls_back_to_last_activity(self):
        last_active = utcnow() - timedelta(minutes=3)
        task_session = TaskSession()
        participant = Participant(last_active_at=last_active)
        assert finalize_end_time(task_session, participant) == last_active

    def test_falls_back_to_now(self):
        now = utcnow()
        assert finalize_end_time(TaskSession(), Participant(), now=now) == now

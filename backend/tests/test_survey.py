# backend/tests/test_survey.py
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from study_app.core.config import settings
from study_app.core.errors import AlreadySubmitted, ValidationFailed
from study_app.core.routing import Step
from study_app.models.enums import SurveyPhase
from study_app.models.participant import Participant
from study_app.models.survey import SurveyAnswer, SurveyAnswerOption, SurveyInstance
from study_app.schemas.survey import MultiChoiceAnswer, ScaleAnswer, SingleChoiceAnswer
from study_app.services import survey_service as survey_service_module
from study_app.services.survey_service import survey_service

API = settings.API_STUDY_STR


@pytest.fixture()
def pre_participant(make_participant):
    return make_participant("P001", step=Step.PRE_SURVEY)


def _questions(client, headers):
    view = client.get(f"{API}/pre", headers=headers).json()
    return {question["key"]: question for question in view["questions"]}


def _valid_answers(questions):
    return [
        {"questionId": questions["llm_usage"]["id"], "type": "SINGLE_CHOICE",
         "optionId": questions["llm_usage"]["options"][0]["id"]},
        {"questionId": questions["data_literacy"]["id"], "type": "SCALE_NRS", "value": 7},
    ]


class TestSurveyView:

    def test_view_lists_questions_in_order(self, client, pre_participant, headers_for):
        response = client.get(f"{API}/pre", headers=headers_for(pre_participant))

        assert response.status_code == 200
        view = response.json()
        assert view["phase"] == "PRE"
        assert view["templateKey"] == "pre"
        assert view["submitted"] is False
        assert [q["key"] for q in view["questions"]] == ["llm_usage", "data_literacy", "domains"]
        scale = view["questions"][1]
        assert (scale["scaleMin"], scale["scaleMax"], scale["scaleStep"]) == (0, 10, 1)

    def test_reload_reuses_instance(self, client, db, pre_participant, headers_for):
        headers = headers_for(pre_participant)
        first = client.get(f"{API}/pre", headers=headers).json()
        second = client.get(f"{API}/pre", headers=headers).json()

        assert first["instanceId"] == second["instanceId"]
        assert db.query(SurveyInstance).count() == 1


class TestSurveyValidation:
    """提交时的答案校验"""

    def _submit(self, client, headers, answers):
        return client.post(f"{API}/pre/submit", headers=headers, json={"answers": answers})

    def test_valid_submission_advances(self, client, db, pre_participant, headers_for):
        headers = headers_for(pre_participant)
        questions = _questions(client, headers)
        answers = _valid_answers(questions) + [
            {"questionId": questions["domains"]["id"], "type": "MULTI_CHOICE",
             "optionIds": [option["id"] for option in questions["domains"]["options"][:2]]},
        ]

        response = self._submit(client, headers, answers)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "redirectTo": "/study/P001/task/1"}
        db.expire_all()
        assert db.query(SurveyAnswer).count() == 3
        assert db.query(SurveyAnswerOption).count() == 2
        assert db.query(SurveyInstance).one().submitted_at is not None

    @pytest.mark.parametrize("mutate, error", [
        (lambda q, a: a[1].update(value=11), "Value too large: data_literacy"),
        (lambda q, a: a[1].update(value=-1), "Value too small: data_literacy"),
        (lambda q, a: a[1].update(value=2.5), "Invalid step for data_literacy"),
        (lambda q, a: a[0].update(optionId=999999), "Invalid option for llm_usage"),
        (lambda q, a: a.pop(0), "Missing required answer: llm_usage"),
        (lambda q, a: a.append(dict(a[1])), None),
        (lambda q, a: a.append({"questionId": 999999, "type": "TEXT", "text": "x"}), "Unknown question id 999999"),
        (lambda q, a: a[0].update(type="TEXT", text="daily"), "Answer type mismatch for question llm_usage"),
    ])
    def test_rejected_answers(self, client, db, pre_participant, headers_for, mutate, error):
        headers = headers_for(pre_participant)
        questions = _questions(client, headers)
        answers = _valid_answers(questions)
        mutate(questions, answers)

        response = self._submit(client, headers, answers)

        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        if error is None:
            assert body["error"].startswith("Duplicate answer for question id")
        else:
            assert body["error"] == error
        db.expire_all()
        assert db.query(SurveyAnswer).count() == 0
        assert db.get(Participant, pre_participant.id).current_step == Step.PRE_SURVEY.value

    def test_empty_required_multi_choice(self, db, make_participant):
        # 演示问卷中的多选题是可选的，这里临时改为必答
        participant = make_participant("P002", step=Step.PRE_SURVEY)
        instance = survey_service.ensure_instance(db, participant, SurveyPhase.PRE)
        questions = {q.key: q for q in instance.template.questions}
        domains = questions["domains"]
        domains.required = True
        db.commit()

        answers = [
            SingleChoiceAnswer(question_id=questions["llm_usage"].id, type="SINGLE_CHOICE",
                               option_id=questions["llm_usage"].options[0].id),
            ScaleAnswer(question_id=questions["data_literacy"].id, type="SCALE_NRS", value=3),
            MultiChoiceAnswer(question_id=domains.id, type="MULTI_CHOICE", option_ids=[]),
        ]
        with pytest.raises(ValidationFailed) as exc_info:
            survey_service.validate(instance, answers)
        assert exc_info.value.error == "Select at least one option: domains"


class TestSurveyAtomicity:
    """提交要么全部写入，要么什么都不写"""

    def _answers(self, instance):
        questions = {q.key: q for q in instance.template.questions}
        return [
            SingleChoiceAnswer(question_id=questions["llm_usage"].id, type="SINGLE_CHOICE",
                               option_id=questions["llm_usage"].options[0].id),
            ScaleAnswer(question_id=questions["data_literacy"].id, type="SCALE_NRS", value=5),
        ]

    def test_failed_advance_rolls_back_answers(self, db, pre_participant):
        instance = survey_service.ensure_instance(db, pre_participant, SurveyPhase.PRE)
        answers = self._answers(instance)

        def broken_advance(_participant):
            raise RuntimeError("state machine unavailable")

        with pytest.raises(RuntimeError):
            survey_service.submit(db, pre_participant, SurveyPhase.PRE, answers, advance=broken_advance)

        db.expire_all()
        assert db.query(SurveyAnswer).count() == 0
        assert db.get(SurveyInstance, instance.id).submitted_at is None
        assert db.get(Participant, pre_participant.id).current_step == Step.PRE_SURVEY.value

    def test_second_submit_is_rejected(self, db, pre_participant):
        instance = survey_service.ensure_instance(db, pre_participant, SurveyPhase.PRE)
        answers = self._answers(instance)

        survey_service.submit(db, pre_participant, SurveyPhase.PRE, answers, advance=lambda p: None)
        with pytest.raises(AlreadySubmitted):
            survey_service.submit(db, pre_participant, SurveyPhase.PRE, answers, advance=lambda p: None)

        assert db.query(SurveyAnswer).count() == 2

    def test_resubmit_after_advance_hits_step_guard(self, client, pre_participant, headers_for):
        headers = headers_for(pre_participant)
        answers = _valid_answers(_questions(client, headers))
        client.post(f"{API}/pre/submit", headers=headers, json={"answers": answers})

        response = client.post(f"{API}/pre/submit", headers=headers, json={"answers": answers})

        assert response.status_code == 409
        assert response.json()["redirectTo"] == "/study/P001/task/1"

    def test_concurrent_duplicate_submit_is_rejected(self, db, session_factory, pre_participant):
        """另一个标签页在本次校验之后、写入之前提交了同一份问卷"""
        instance = survey_service.ensure_instance(db, pre_participant, SurveyPhase.PRE)
        answers = self._answers(instance)
        validate = survey_service.validate
        calls = []

        def validate_then_race(*args):
            result = validate(*args)
            if not calls:
                calls.append(1)
                other = session_factory()
                try:
                    other_participant = other.get(Participant, pre_participant.id)
                    survey_service.submit(other, other_participant, SurveyPhase.PRE, answers, advance=lambda p: None)
                finally:
                    other.close()
            return result

        with patch.object(survey_service, "validate", side_effect=validate_then_race):
            with pytest.raises(AlreadySubmitted):
                survey_service.submit(db, pre_participant, SurveyPhase.PRE, answers, advance=lambda p: None)

        db.expire_all()
        assert db.query(SurveyAnswer).count() == 2
        assert db.get(SurveyInstance, instance.id).submitted_at is not None

    def test_duplicate_answer_rows_map_to_already_submitted(self, db, pre_participant):
        instance = survey_service.ensure_instance(db, pre_participant, SurveyPhase.PRE)
        answers = self._answers(instance)

        with patch.object(survey_service_module.crud_survey_answer, "create",
                          side_effect=IntegrityError("INSERT", {}, Exception("unique"))):
            with pytest.raises(AlreadySubmitted):
                survey_service.submit(db, pre_participant, SurveyPhase.PRE, answers, advance=lambda p: None)

        db.expire_all()
        assert db.get(SurveyInstance, instance.id).submitted_at is None

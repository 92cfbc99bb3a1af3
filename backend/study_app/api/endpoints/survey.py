from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from study_app.config.dependency_injection import get_current_participant, get_db
from study_app.models.participant import Participant
from study_app.schemas.response import RedirectResponse
from study_app.schemas.survey import SurveySubmitRequest, SurveyView
from study_app.services.task_flow import task_flow

router = APIRouter()


@router.get("/pre", response_model=SurveyView, response_model_by_alias=True)
def get_pre_survey(
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """加载前测问卷（首次访问时创建问卷实例）"""
    return task_flow.load_pre_survey(db, participant)


@router.post("/pre/submit", response_model=RedirectResponse, response_model_by_alias=True)
def submit_pre_survey(
        submission: SurveySubmitRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    redirect_to = task_flow.submit_pre_survey(db, participant, submission.answers)
    return RedirectResponse(redirect_to=redirect_to)


@router.get("/final", response_model=SurveyView, response_model_by_alias=True)
def get_final_survey(
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    return task_flow.load_final_survey(db, participant)


@router.post("/final/submit", response_model=RedirectResponse, response_model_by_alias=True)
def submit_final_survey(
        submission: SurveySubmitRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """
    提交结束问卷

    提交成功后参与者状态变为 COMPLETED、步骤变为 DONE。

    Returns:
        RedirectResponse: 完成页路由
    """
    redirect_to = task_flow.submit_final_survey(db, participant, submission.answers)
    return RedirectResponse(redirect_to=redirect_to)

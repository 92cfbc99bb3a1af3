from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from study_app.config.dependency_injection import get_current_participant, get_db
from study_app.models.participant import Participant
from study_app.schemas.response import RedirectResponse
from study_app.schemas.survey import SurveySubmitRequest, SurveyView
from study_app.schemas.task import TaskView
from study_app.services.task_flow import parse_task_number, task_flow

router = APIRouter()


@router.get("/{task_number}", response_model=TaskView, response_model_by_alias=True)
def get_task(
        task_number: str,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """
    加载任务页面

    Args:
        task_number: 任务编号（1..3）
        participant: 当前参与者
        db: 数据库会话

    Returns:
        TaskView: 任务说明与侧边栏开关
    """
    return task_flow.load_task(db, participant, parse_task_number(task_number))


@router.post("/{task_number}/ready", response_model=RedirectResponse, response_model_by_alias=True)
def ready_to_answer(
        task_number: str,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """结束聊天并进入任务后问卷"""
    redirect_to = task_flow.mark_ready(db, participant, parse_task_number(task_number))
    return RedirectResponse(redirect_to=redirect_to)


@router.get("/{task_number}/post", response_model=SurveyView, response_model_by_alias=True)
def get_post_survey(
        task_number: str,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    return task_flow.load_post_survey(db, participant, parse_task_number(task_number))


@router.post("/{task_number}/post/submit", response_model=RedirectResponse, response_model_by_alias=True)
def submit_post_survey(
        task_number: str,
        submission: SurveySubmitRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    redirect_to = task_flow.submit_post_survey(
        db, participant, parse_task_number(task_number), submission.answers
    )
    return RedirectResponse(redirect_to=redirect_to)

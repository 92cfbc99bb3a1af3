from fastapi import APIRouter
from study_app.api.endpoints import session, survey, task, chat, side_panel

api_router = APIRouter()
api_router.include_router(session.router, tags=["session"])
api_router.include_router(survey.router, tags=["survey"])
api_router.include_router(task.router, prefix="/task", tags=["task"])
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(side_panel.router, prefix="/side-panel", tags=["side-panel"])

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from study_app.api.endpoints.agent_proxy import router as agent_proxy_router
from study_app.api.api import api_router
from study_app.core.config import settings
from study_app.core.errors import StudyAPIError, request_validation_error_handler, study_api_error_handler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_STUDY_STR}/openapi.json"
)

# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_exception_handler(StudyAPIError, study_api_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

app.include_router(api_router, prefix=settings.API_STUDY_STR)
app.include_router(agent_proxy_router, prefix=settings.API_AGENT_PROXY_STR, tags=["agent-proxy"])


if __name__ == '__main__':
    uvicorn.run(
        'study_app.main:app',
        host='0.0.0.0',
        port=settings.BACKEND_PORT,
        reload=True
    )

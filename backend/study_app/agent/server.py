"""
Agent运行时服务。

独立的FastAPI应用，研究后端通过 /api/langgraph 反向代理访问它：
- POST /threads                    创建线程
- GET  /threads/{thread_id}/state  读取线程消息
- POST /threads/{thread_id}/runs/wait  执行一个用户回合并返回完整消息

数据库读写通过 asyncio.to_thread 在工作线程中进行，不阻塞事件循环。
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from study_app.agent import checkpoints
from study_app.agent.configuration import ensure_configuration
from study_app.agent.graph import AgentGraph
from study_app.agent.messages import normalize_messages
from study_app.core.config import settings
from study_app.database import SessionLocal

logger = logging.getLogger(__name__)


class ThreadCreateRequest(BaseModel):
    thread_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class RunInput(BaseModel):
    messages: List[Dict[str, Any]] = []


class RunRequest(BaseModel):
    input: RunInput = RunInput()
    config: Optional[Dict[str, Any]] = None


def _thread_state(thread_id: str, messages: List) -> Dict[str, Any]:
    return {
        "thread_id": thread_id,
        "values": {"messages": [message.model_dump(mode="json") for message in messages]},
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with checkpoints.open_checkpointer() as checkpointer:
        app.state.agent_graph = AgentGraph(checkpointer=checkpointer)
        yield


def get_session_factory():
    return SessionLocal


def get_agent_graph(request: Request) -> AgentGraph:
    return request.app.state.agent_graph


app = FastAPI(title="Data-Aware Study Agent", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.AGENT_CORS_ALLOWED_ORIGINS],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/ok")
def health():
    return {"ok": True}


@app.post("/threads")
async def create_thread(
        request: Optional[ThreadCreateRequest] = None,
        session_factory=Depends(get_session_factory),
):
    thread = await asyncio.to_thread(
        checkpoints.create_thread,
        session_factory,
        request.thread_id if request else None,
        request.metadata if request else None,
    )
    return {
        "thread_id": thread.thread_id,
        "created_at": thread.created_at.isoformat() + "Z",
        "metadata": thread.thread_metadata or {},
    }


@app.get("/threads/{thread_id}/state")
async def get_thread_state(
        thread_id: str,
        session_factory=Depends(get_session_factory),
        graph: AgentGraph = Depends(get_agent_graph),
):
    thread = await asyncio.to_thread(checkpoints.get_thread, session_factory, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return _thread_state(thread_id, await graph.get_messages(thread_id))


@app.post("/threads/{thread_id}/runs/wait")
async def run_and_wait(
        thread_id: str,
        request: RunRequest,
        session_factory=Depends(get_session_factory),
        graph: AgentGraph = Depends(get_agent_graph),
):
    """
    执行一个用户回合（包括数据质量检查），消息由图的检查点保存

    Args:
        thread_id: 线程ID，不存在时自动登记
        request: {input: {messages}, config: {configurable}}
        session_factory: Session工厂
        graph: 对话图

    Returns:
        线程的完整状态
    """
    try:
        new_messages = normalize_messages(request.input.messages)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not new_messages:
        raise HTTPException(status_code=400, detail="input.messages must not be empty")

    await asyncio.to_thread(checkpoints.create_thread, session_factory, thread_id)

    configuration = ensure_configuration(request.config, thread_id=thread_id)
    messages = await graph.run_turn(configuration, new_messages)

    logger.info("Run finished for thread=%s (%d messages)", thread_id, len(messages))
    return _thread_state(thread_id, messages)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "study_app.agent.server:app",
        host="0.0.0.0",
        port=settings.AGENT_PORT,
        reload=True,
    )

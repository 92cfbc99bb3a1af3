"""
参与者步骤与前端路由之间的映射。

步骤序列是固定的：
WELCOME → PRE_SURVEY → TASK1_CHAT → TASK1_POST_SURVEY → ... → TASK3_POST_SURVEY → FINAL_SURVEY → DONE
"""
import re
from enum import Enum
from typing import Optional

TASK_COUNT = 3


class Step(str, Enum):
    WELCOME = "WELCOME"
    PRE_SURVEY = "PRE_SURVEY"
    TASK1_CHAT = "TASK1_CHAT"
    TASK1_POST_SURVEY = "TASK1_POST_SURVEY"
    TASK2_CHAT = "TASK2_CHAT"
    TASK2_POST_SURVEY = "TASK2_POST_SURVEY"
    TASK3_CHAT = "TASK3_CHAT"
    TASK3_POST_SURVEY = "TASK3_POST_SURVEY"
    FINAL_SURVEY = "FINAL_SURVEY"
    DONE = "DONE"


STEP_ORDER = list(Step)

_TASK_STEP_RE = re.compile(r"^TASK([1-3])_(CHAT|POST_SURVEY)$")


def chat_step(task_number: int) -> Step:
    return Step(f"TASK{task_number}_CHAT")


def post_survey_step(task_number: int) -> Step:
    return Step(f"TASK{task_number}_POST_SURVEY")


def task_number_for_step(step: str) -> Optional[int]:
    """
    返回任务步骤对应的任务编号，非任务步骤返回None

    Args:
        step: 步骤名称

    Returns:
        Optional[int]: 1..3 或 None
    """
    match = _TASK_STEP_RE.match(str(step))
    if not match:
        return None
    return int(match.group(1))


def next_step(step: Step) -> Optional[Step]:
    """按固定顺序返回下一个步骤；DONE之后没有步骤"""
    index = STEP_ORDER.index(step)
    if index + 1 >= len(STEP_ORDER):
        return None
    return STEP_ORDER[index + 1]


def step_to_path(access_code: str, step: Optional[str]) -> str:
    """
    将参与者的当前步骤映射到唯一的前端路由。

    Args:
        access_code: 参与者访问码
        step: 当前步骤（未知值回退到欢迎页）

    Returns:
        str: 规范路由
    """
    step_value = step.value if isinstance(step, Step) else str(step or "")

    if step_value == Step.WELCOME.value:
        return "/study"
    if step_value == Step.PRE_SURVEY.value:
        return f"/study/{access_code}/pre"
    if step_value == Step.FINAL_SURVEY.value:
        return f"/study/{access_code}/final"
    if step_value == Step.DONE.value:
        return f"/study/{access_code}/done"

    match = _TASK_STEP_RE.match(step_value)
    if match:
        task_number, kind = match.group(1), match.group(2)
        if kind == "CHAT":
            return f"/study/{access_code}/task/{task_number}"
        return f"/study/{access_code}/task/{task_number}/post"

    return "/study"

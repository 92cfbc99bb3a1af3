from enum import Enum


class ParticipantStatus(str, Enum):
    CREATED = "CREATED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    WITHDRAWN = "WITHDRAWN"
    INVALIDATED = "INVALIDATED"


class ThreadStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    RESTARTED = "RESTARTED"
    TASK_FINISHED = "TASK_FINISHED"
    ABANDONED = "ABANDONED"
    ERROR = "ERROR"


class ChatRole(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    TOOL = "TOOL"
    SYSTEM = "SYSTEM"


class QuestionType(str, Enum):
    SCALE_NRS = "SCALE_NRS"
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTI_CHOICE = "MULTI_CHOICE"
    TEXT = "TEXT"


class SurveyPhase(str, Enum):
    PRE = "PRE"
    TASK1_POST = "TASK1_POST"
    TASK2_POST = "TASK2_POST"
    TASK3_POST = "TASK3_POST"
    FINAL = "FINAL"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    RESEARCHER = "RESEARCHER"

# This file makes the 'models' directory a Python package.

from .study import Study, TaskDefinition
from .participant import Participant, ParticipantAccessLog
from .chat import TaskSession, ChatThread, ChatMessage, SidePanelSpan
from .survey import (
    SurveyTemplate,
    SurveyQuestion,
    SurveyOption,
    SurveyInstance,
    SurveyAnswer,
    SurveyAnswerOption,
)
from .audit import ThreadDataQualityLog
from .dataset import Dataset, DatasetTable
from .user import User
from .agent_thread import AgentThread

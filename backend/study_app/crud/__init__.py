from .crud_participant import participant, access_log
from .crud_task_session import task_session
from .crud_chat_thread import chat_thread, chat_message
from .crud_side_panel import side_panel_span
from .crud_survey import survey_template, survey_instance, survey_answer
from .crud_dq_log import dq_log

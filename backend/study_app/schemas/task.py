from .response import OkResponse


class TaskView(OkResponse):
    task_number: int
    title: str
    prompt_markdown: str
    side_panel_enabled: bool

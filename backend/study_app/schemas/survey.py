from typing import Annotated, List, Literal, Optional, Union
from pydantic import Field, StrictFloat, StrictInt, StrictStr
from .response import CamelModel, OkResponse


class SurveyOptionView(CamelModel):
    id: int
    label: str
    value: str
    order: int


class SurveyQuestionView(CamelModel):
    id: int
    key: str
    text: str
    type: str
    required: bool
    order: int
    scale_min: Optional[float] = None
    scale_max: Optional[float] = None
    scale_step: Optional[float] = None
    options: List[SurveyOptionView] = []


class SurveyView(OkResponse):
    instance_id: int
    phase: str
    template_key: str
    title: str
    submitted: bool
    questions: List[SurveyQuestionView]


class ScaleAnswer(CamelModel):
    question_id: StrictInt
    type: Literal["SCALE_NRS"]
    value: Union[StrictInt, StrictFloat]


class SingleChoiceAnswer(CamelModel):
    question_id: StrictInt
    type: Literal["SINGLE_CHOICE"]
    option_id: StrictInt


class MultiChoiceAnswer(CamelModel):
    question_id: StrictInt
    type: Literal["MULTI_CHOICE"]
    option_ids: List[StrictInt]


class TextAnswer(CamelModel):
    question_id: StrictInt
    type: Literal["TEXT"]
    text: StrictStr


# 按 type 字段区分的答案联合类型
SurveyAnswerIn = Annotated[
    Union[ScaleAnswer, SingleChoiceAnswer, MultiChoiceAnswer, TextAnswer],
    Field(discriminator="type"),
]


class SurveySubmitRequest(CamelModel):
    answers: List[SurveyAnswerIn] = []

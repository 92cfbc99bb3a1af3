#!/usr/bin/env python3
"""
数据库初始化脚本

创建应用数据库的所有表，并可选地写入演示研究：
三个任务定义、五个问卷模板、若干参与者访问码、一个管理员用户以及数据集目录。

用法：
    python -m study_app.db.init_db            # 只建表
    python -m study_app.db.init_db --seed     # 建表并写入演示数据
"""
import argparse
import os
import uuid
from typing import Dict, Iterable, List, Optional

# 确保在导入任何其他模块之前加载环境变量
from dotenv import load_dotenv

_backend_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
for _candidate in (os.path.join(_backend_root, ".env"), os.path.join(os.path.dirname(_backend_root), ".env")):
    if os.path.exists(_candidate):
        load_dotenv(_candidate)
        break

from sqlalchemy.orm import Session

from study_app.core.config import settings
from study_app.database import SessionLocal, engine
from study_app.db.base_class import Base
from study_app.models import (
    Dataset,
    DatasetTable,
    Participant,
    Study,
    SurveyOption,
    SurveyQuestion,
    SurveyTemplate,
    TaskDefinition,
    User,
)
from study_app.models.enums import QuestionType, UserRole

DEMO_STUDY_KEY = "data-aware-llm"

DEMO_TASKS = [
    (1, "Task 1: Population trend", "Use the assistant to find how the population of a country of your choice developed over the last ten years."),
    (2, "Task 2: Energy mix", "Use the assistant to compare the share of renewable energy between two countries for 2015 to 2022."),
    (3, "Task 3: Open question", "Ask the assistant any question about the available datasets that matters to you."),
]

_TRUST_SCALE = {"type": QuestionType.SCALE_NRS, "scale_min": 0, "scale_max": 10, "scale_step": 1}

DEMO_SURVEYS: Dict[str, dict] = {
    "pre": {
        "title": "Before we start",
        "questions": [
            {"key": "llm_usage", "text": "How often do you use AI chat assistants?", "type": QuestionType.SINGLE_CHOICE,
             "options": [("Never", "never"), ("Monthly", "monthly"), ("Weekly", "weekly"), ("Daily", "daily")]},
            {"key": "data_literacy", "text": "How confident are you working with data?", **_TRUST_SCALE},
            {"key": "domains", "text": "Which topics are you familiar with?", "type": QuestionType.MULTI_CHOICE,
             "required": False,
             "options": [("Demographics", "demographics"), ("Energy", "energy"), ("Economy", "economy")]},
        ],
    },
    "task1_post": {"title": "About task 1", "questions": []},
    "task2_post": {"title": "About task 2", "questions": []},
    "task3_post": {"title": "About task 3", "questions": []},
    "final": {
        "title": "Final questions",
        "questions": [
            {"key": "overall_trust", "text": "Overall, how much do you trust the assistant's answers?", **_TRUST_SCALE},
            {"key": "comments", "text": "Any further comments?", "type": QuestionType.TEXT, "required": False},
        ],
    },
}

for _key in ("task1_post", "task2_post", "task3_post"):
    DEMO_SURVEYS[_key]["questions"] = [
        {"key": "answer_trust", "text": "How much do you trust the answer you received?", **_TRUST_SCALE},
        {"key": "data_timely", "text": "Was the data used up to date for your question?", "type": QuestionType.SINGLE_CHOICE,
         "options": [("Yes", "yes"), ("No", "no"), ("Not sure", "unsure")]},
        {"key": "answer", "text": "What is your answer to the task?", "type": QuestionType.TEXT},
    ]

DEMO_DATASETS = [
    {
        "key": "world-population",
        "display_name": "World population",
        "origin": "Demo",
        "author": "Study team",
        "file_type": "csv",
        "tables": ["main.population"],
    },
    {
        "key": "energy-mix",
        "display_name": "Energy mix",
        "origin": "Demo",
        "author": "Study team",
        "file_type": "csv",
        "tables": ["main.energy_share"],
    },
]


def create_tables(bind=None) -> None:
    """创建所有表"""
    Base.metadata.create_all(bind=bind or engine)


def seed_survey_templates(db: Session, study: Study, surveys: Optional[Dict[str, dict]] = None) -> List[SurveyTemplate]:
    templates = []
    for key, spec in (surveys or DEMO_SURVEYS).items():
        template = SurveyTemplate(study_id=study.id, key=key, title=spec["title"])
        db.add(template)
        db.flush()
        for order, question_spec in enumerate(spec["questions"], start=1):
            question = SurveyQuestion(
                template_id=template.id,
                key=question_spec["key"],
                text=question_spec["text"],
                type=question_spec["type"].value,
                required=question_spec.get("required", True),
                order=order,
                scale_min=question_spec.get("scale_min"),
                scale_max=question_spec.get("scale_max"),
                scale_step=question_spec.get("scale_step"),
            )
            db.add(question)
            db.flush()
            for option_order, (label, value) in enumerate(question_spec.get("options", []), start=1):
                db.add(SurveyOption(question_id=question.id, label=label, value=value, order=option_order))
        templates.append(template)
    db.flush()
    return templates


def seed_demo_study(db: Session, key: str = DEMO_STUDY_KEY) -> Study:
    """
    写入演示研究（已存在时直接返回）

    Args:
        db: 数据库会话
        key: 研究键

    Returns:
        Study: 研究
    """
    study = db.query(Study).filter(Study.key == key).first()
    if study is not None:
        return study

    study = Study(key=key, name="Data-aware LLM study")
    db.add(study)
    db.flush()
    for task_number, title, prompt in DEMO_TASKS:
        db.add(TaskDefinition(study_id=study.id, task_number=task_number, title=title, prompt_markdown=prompt))
    seed_survey_templates(db, study)
    db.commit()
    return study


def seed_participants(db: Session, study: Study, access_codes: Iterable[str]) -> List[Participant]:
    """按访问码创建参与者；访问码按顺序交替启用侧边栏"""
    participants = []
    for index, code in enumerate(access_codes):
        existing = db.query(Participant).filter(Participant.access_code == code).first()
        if existing is not None:
            participants.append(existing)
            continue
        participant = Participant(
            id=str(uuid.uuid4()),
            study_id=study.id,
            access_code=code,
            side_panel_enabled=index % 2 == 0,
            assigned_variant="side_panel" if index % 2 == 0 else "control",
        )
        db.add(participant)
        participants.append(participant)
    db.commit()
    return participants


def seed_admin(db: Session, email: str) -> User:
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        user = User(id=str(uuid.uuid4()), email=email, role=UserRole.ADMIN.value)
        db.add(user)
        db.commit()
    return user


def seed_dataset_catalog(db: Session, datasets: Optional[List[dict]] = None) -> None:
    for spec in datasets or DEMO_DATASETS:
        dataset = db.query(Dataset).filter(Dataset.key == spec["key"]).first()
        if dataset is None:
            fields = {name: value for name, value in spec.items() if name != "tables"}
            dataset = Dataset(**fields)
            db.add(dataset)
            db.flush()
        known = {table.table_name for table in dataset.tables}
        for table_name in spec["tables"]:
            if table_name not in known:
                db.add(DatasetTable(dataset_id=dataset.id, table_name=table_name))
    db.commit()


def init_db(seed: bool = False, participant_count: int = 10, admin_email: Optional[str] = None) -> None:
    """初始化数据库，创建所有表"""
    print(f"Using database URL: {settings.DATABASE_URL}")
    create_tables()
    print("数据库表创建成功！")
    if not seed:
        return

    db = SessionLocal()
    try:
        study = seed_demo_study(db)
        codes = [f"P{number:03d}" for number in range(1, participant_count + 1)]
        seed_participants(db, study, codes)
        seed_dataset_catalog(db)
        if admin_email:
            seed_admin(db, admin_email)
        print(f"演示数据写入成功：{len(codes)} 个参与者访问码 ({codes[0]} .. {codes[-1]})")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the study database tables")
    parser.add_argument("--seed", action="store_true", help="also write the demo study")
    parser.add_argument("--participants", type=int, default=10)
    parser.add_argument("--admin-email", default=None)
    args = parser.parse_args()
    init_db(seed=args.seed, participant_count=args.participants, admin_email=args.admin_email)

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base


class Dataset(Base):
    """数据集目录模型

    Attributes:
        key: 数据集唯一键
        display_name: 展示名称
        origin / author / file_type: 来源信息
        file_size_bytes / record_count: 规模信息
        updated_at: 数据集最近一次加载时间
    """
    __tablename__ = "datasets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, unique=True, nullable=False)
    display_name = Column(String, nullable=False)
    origin = Column(String, nullable=True)
    author = Column(String, nullable=True)
    file_type = Column(String, nullable=True)
    file_size_bytes = Column(BigInteger, nullable=True)
    record_count = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    tables = relationship("DatasetTable", back_populates="dataset")


class DatasetTable(Base):
    """表名到数据集的映射，table_name 形如 schema.table"""
    __tablename__ = "dataset_tables"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id"), nullable=False, index=True)
    table_name = Column(String, unique=True, nullable=False)

    dataset = relationship("Dataset", back_populates="tables")

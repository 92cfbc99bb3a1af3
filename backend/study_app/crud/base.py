from typing import Any, Dict, Generic, Optional, Type, TypeVar

from sqlalchemy.orm import Session

# 导入SQLAlchemy模型基类
from study_app.db.base_class import Base

# 定义泛型类型变量
ModelType = TypeVar("ModelType", bound=Base)


class CRUDBase(Generic[ModelType]):
    def __init__(self, model: Type[ModelType]):
        """
        具有默认读取、创建操作的CRUD对象。

        写操作只 flush 不 commit，事务边界由调用方（服务层）决定。

        **参数**

        * `model`: SQLAlchemy模型类
        """
        self.model = model

    def get(self, db: Session, obj_id: Any) -> Optional[ModelType]:
        """
        通过ID获取单个记录。

        Args:
            db: 数据库会话
            obj_id: 记录ID

        Returns:
            Optional[ModelType]: 找到的记录，如果不存在则返回None
        """
        # 检查obj_id是否为None，避免在filter中产生无效的布尔值
        if obj_id is None:
            return None
        return db.get(self.model, obj_id)

    def create(self, db: Session, *, obj_in: Dict[str, Any]) -> ModelType:
        """
        在当前事务中创建记录并 flush，以便获得主键与唯一约束检查。

        Args:
            db: 数据库会话
            obj_in: 字段字典

        Returns:
            ModelType: 创建的记录
        """
        db_obj = self.model(**obj_in)
        db.add(db_obj)
        db.flush()
        return db_obj

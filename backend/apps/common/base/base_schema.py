# apps/common/base/base_schema.py

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, Generic, Iterable, Optional, TypeVar

from apps.common.exceptions import ValidationError

T = TypeVar("T")
SchemaType = TypeVar("SchemaType", bound="BaseSchema[Any]")


@dataclass
class BaseSchema(ABC, Generic[T]):
    """
    业务 Schema / DTO 基类

    目的：
        - 用于 Service 层在外部输入与领域对象之间传递结构化数据；
        - 聚合字段校验逻辑，替代零散的 serializer 校验；
        - 提供通用的字典化能力

    子类示例：
        @dataclass
        class InstanceActionSchema(BaseSchema):
            contest_id: uuid.UUID
            challenge_id: uuid.UUID

            def validate(self):
                ...
    """

    #: 是否在 __post_init__ 中自动执行 validate
    auto_validate: ClassVar[bool] = False

    def __post_init__(self):
        if self.auto_validate:
            self.validate()

    @abstractmethod
    def validate(self) -> None:
        """子类实现字段/业务约束校验，出错时抛 BizError"""

    def to_dict(
            self,
            *,
            exclude_none: bool = False,
            exclude: Iterable[str] | None = None,
    ) -> Dict[str, Any]:
        """将 Schema 转为 dict，支持过滤 None 或移除指定字段"""
        data = asdict(self)
        if exclude_none:
            data = {key: value for key, value in data.items() if value is not None}
        if exclude:
            for key in exclude:
                data.pop(key, None)
        return data

    @classmethod
    def from_dict(
            cls: type[SchemaType],
            data: Dict[str, Any],
            *,
            auto_validate: Optional[bool] = None,
    ) -> SchemaType:
        """
        将外部 payload 转为 Schema；auto_validate 控制是否立即校验

        - 未声明的字段直接丢弃，缺失的必填字段转为 ValidationError
        """
        if not isinstance(data, dict):
            data = dict(data)
        known = {f.name for f in fields(cls)}
        payload = {key: value for key, value in data.items() if key in known}
        try:
            instance = cls(**payload)  # type: ignore[arg-type]
        except TypeError as exc:
            raise ValidationError(message="missing required fields") from exc
        if auto_validate or (auto_validate is None and cls.auto_validate):
            instance.validate()
        return instance

    @staticmethod
    def parse_uuid(value: Any, field_name: str) -> uuid.UUID:
        """把外部传入的字符串 / UUID 规范为 UUID，非法时抛 ValidationError"""
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value))
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(message=f"invalid {field_name}") from exc

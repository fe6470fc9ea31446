# apps/common/base/base_repo.py

from __future__ import annotations

from abc import ABC
from typing import Any, Generic, Iterable, Optional, TypeVar

from django.db.models import Model, QuerySet
from django.utils import timezone

T = TypeVar("T", bound=Model)


class BaseRepo(ABC, Generic[T]):
    """
    Repository（数据访问层）基类：
    - 统一封装 Django ORM 读写细节，给 Service 提供稳定接口
    - 集中管理 select_related/filter 等查询配置
    - 用法示例：class InstanceRepo(BaseRepo[Instance]): model = Instance
    """

    #: 子类必须指定对应的模型
    model: type[T]

    def get_queryset(self) -> QuerySet[T]:
        """返回默认 QuerySet，子类可覆盖以附加 select_related/filter"""
        if not getattr(self, "model", None):
            raise NotImplementedError("BaseRepo 子类必须声明 model 属性")
        return self.model._default_manager.all()

    def filter(self, *, queryset: Optional[QuerySet[T]] = None, **filters) -> QuerySet[T]:
        """通用过滤入口，允许注入自定义 QuerySet"""
        qs = queryset if queryset is not None else self.get_queryset()
        return qs.filter(**filters)

    def list(self, **filters) -> Iterable[T]:
        return self.filter(**filters)

    def get_by_id(self, pk: Any, *, queryset: Optional[QuerySet[T]] = None) -> T:
        """根据主键获取对象，不存在时让上层自行捕获 DoesNotExist 转 BizError"""
        qs = queryset if queryset is not None else self.get_queryset()
        return qs.get(pk=pk)

    def get_or_none(self, *, queryset: Optional[QuerySet[T]] = None, **filters) -> Optional[T]:
        """返回符合条件的单个对象，未命中则为 None"""
        qs = queryset if queryset is not None else self.get_queryset()
        return qs.filter(**filters).first()

    def exists(self, **filters) -> bool:
        return self.filter(**filters).exists()

    # ------------------------
    # 写操作
    # ------------------------

    def create(self, data: dict) -> T:
        return self.model._default_manager.create(**data)

    def update(self, instance: T, data: dict) -> T:
        """批量更新字段并保存，返回最新实例"""
        for field, value in data.items():
            setattr(instance, field, value)
        if data:
            instance.save(update_fields=list(data.keys()))
        else:
            instance.save()
        return instance

    def conditional_update(self, *, guard: dict, data: dict) -> int:
        """
        条件更新：仅当记录仍满足 guard 条件时写入 data，返回受影响行数

        - 单条 UPDATE ... WHERE，作为乐观并发闸门
        - 模型带 updated_at 字段时自动刷新（QuerySet.update 不触发 auto_now）
        """
        payload = dict(data)
        field_names = {f.name for f in self.model._meta.get_fields()}
        if "updated_at" in field_names and "updated_at" not in payload:
            payload["updated_at"] = timezone.now()
        return self.model._default_manager.filter(**guard).update(**payload)

    def delete(self, instance: T) -> None:
        instance.delete()

from django.apps import AppConfig


class InstancesConfig(AppConfig):
    """
    Instances 应用配置：
    - 运行实例编排（子网分配、模板渲染、compose 调用、生命周期与回收）
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.instances"
    label = "instances"
    verbose_name = "Instances"

from django.apps import AppConfig


class AccountsConfig(AppConfig):
    """
    账户模块应用配置：
    - 注册 accounts 应用的基本信息（名称、标签、默认主键类型）
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.accounts"
    label = "accounts"
    verbose_name = "Accounts"

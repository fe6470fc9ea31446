from django.apps import AppConfig


class ContestsConfig(AppConfig):
    """
    Contests 应用配置：
    - 比赛 / 队伍 / 队员，为运行实例提供比赛状态与队伍身份
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.contests"
    label = "contests"
    verbose_name = "Contests"

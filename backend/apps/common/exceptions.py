"""
业务异常体系（BizError）

约定与作用：
- 所有“预期内的业务错误”都继承 BizError，避免直接抛框架异常
- 统一错误码/HTTP 状态/提示语，便于前后端对齐
- 系统级错误（代码 bug、数据库故障等）由全局异常处理器按 500 处理

错误码规范：
- 0                : 成功（只出现在正常响应里）
- 40000~40099      : 通用请求 / 参数错误（Validation、BadRequest）
- 40100~40199      : 认证错误（未登录、Token 无效等）
- 40300~40399      : 权限错误（无权限访问某资源/操作）
- 40400~40499      : 资源不存在
- 40900~40999      : 资源冲突 / 状态不允许
- 49000~49009      : 运行实例通用错误
- 49010~49019      : 编排模板 / 子网 / 状态机错误
- 49020~49029      : 编排命令执行错误（超时、命令缺失、非零退出）
- 50300~50399      : 基础设施/第三方依赖不可用（缓存、消息队列等）

使用方式：
- 业务层抛 BizError 或子类；全局异常处理器读取 exc.code/message/http_status/extra 构造统一响应
"""


class BizError(Exception):
    """
    所有业务异常的基类

    - 不耦合 DRF / Response，只是纯数据和语义；
    - 子类只需覆盖 default_code / default_message / http_status；
    - 也可以在 __init__ 时传入自定义 message / code / extra 做覆盖
    """

    #: 子类可覆盖的默认错误码
    default_code: int = 40000

    #: 子类可覆盖的默认提示信息
    default_message: str = "request failed"

    #: 子类可覆盖的建议 HTTP 状态码（交给异常处理器用）
    http_status: int = 400

    def __init__(self, message: str | None = None, code: int | None = None, *, extra: dict | None = None):
        self.code = code if code is not None else self.default_code
        self.message = message if message is not None else self.default_message
        self.extra = extra or {}
        super().__init__(self.message)

    def __str__(self) -> str:  # 方便日志输出
        return f"[{self.code}] {self.message}"


# ======================
# 通用类错误
# ======================

class BadRequestError(BizError):
    """无法解析的请求 / 请求格式错误"""
    default_code = 40001
    default_message = "bad request"
    http_status = 400


class ValidationError(BizError):
    """
    参数校验 / 业务前置条件不满足：
    - 缺少必要字段、字段格式错误
    - 运行实例策略检查失败（比赛未开始、题目不可见等），message 即具体原因
    """
    default_code = 40002
    default_message = "invalid request"
    http_status = 400


class NotFoundError(BizError):
    """通用资源不存在（比赛、题目、队伍等）"""
    default_code = 40400
    default_message = "resource not found"
    http_status = 404


class ConflictError(BizError):
    """资源冲突：已存在同名对象或唯一约束冲突"""
    default_code = 40900
    default_message = "resource conflict"
    http_status = 409


# ======================
# 认证 / 授权相关
# ======================

class AuthError(BizError):
    """认证相关错误（登录、Token 等），统一归类为 401xx"""
    default_code = 40100
    default_message = "authentication failed"
    http_status = 401


class TokenError(AuthError):
    """Token 无效 / 过期 / 用途不符"""
    default_code = 40102
    default_message = "token is invalid or expired"


class PermissionDeniedError(BizError):
    """
    权限不足：
    - 普通选手访问私有比赛的运行实例
    - 角色不够访问管理接口
    """
    default_code = 40300
    default_message = "permission denied"
    http_status = 403


# ======================
# 运行实例领域错误
# ======================

class InstanceError(BizError):
    """运行实例相关通用错误基类"""
    default_code = 49000
    default_message = "instance runtime error"
    http_status = 400


class InstanceNotFoundError(ValidationError):
    """
    队伍在该题目下没有可操作的实例

    沿用校验错误语义（400），与“实例不存在”这一可纠正的客户端错误对齐
    """
    default_code = 49001
    default_message = "instance not found"


class ManifestError(InstanceError):
    """编排模板缺失、占位符非法、自定义变量未声明或必填为空"""
    default_code = 49010
    default_message = "invalid compose template"


class SubnetExhaustedError(InstanceError):
    """子网候选空间全部被占用"""
    default_code = 49011
    default_message = "no available subnet for runtime instance"
    http_status = 503


class InvalidTransitionError(InstanceError):
    """状态迁移不在迁移表内"""
    default_code = 49012
    default_message = "instance status transition is not allowed"
    http_status = 409


class ComposeError(InstanceError):
    """编排命令执行失败基类，message 为压缩后的单行诊断信息"""
    default_code = 49020
    default_message = "compose command failed"


class ComposeCommandError(ComposeError):
    """命令以非零状态退出"""
    default_code = 49020


class ComposeTimeoutError(ComposeError):
    """命令超时（不会再尝试其它后端）"""
    default_code = 49021
    default_message = "compose command timed out"


class ComposeUnavailableError(ComposeError):
    """所有编排命令后端都不可用"""
    default_code = 49022
    default_message = "docker compose command is unavailable (tried 'docker compose' and 'docker-compose')"


# ======================
# 基础设施 / 第三方服务错误
# ======================

class InfrastructureError(BizError):
    """基础设施或第三方依赖不可用"""
    default_code = 50300
    default_message = "service temporarily unavailable"
    http_status = 503


class CacheUnavailableError(InfrastructureError):
    """缓存（Redis）不可用：连接失败 / 超时 / 未启动"""
    default_code = 50301
    default_message = "cache service temporarily unavailable"


"""
URL configuration for Config project.

- /admin/：后台（运行实例查看与批量销毁）
- /api/instances/：运行实例生命周期接口
- /api/schema/：OpenAPI 文档
"""
from django.contrib import admin
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView, SpectacularRedocView

# Admin 中文化：修改后台标题/页眉/站点名称，避免默认英文显示
admin.site.site_header = "运行实例编排 管理后台"
admin.site.site_title = "运行实例编排"
admin.site.index_title = "管理控制台"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/instances/', include('apps.instances.urls')),
    # OpenAPI 文档：提供 schema JSON 及 UI，仅供内部/前端获取接口定义
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/schema/swagger-ui/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('api/schema/redoc/', SpectacularRedocView.as_view(url_name='schema'), name='redoc'),
]

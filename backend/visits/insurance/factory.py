"""
工厂函数：根据 settings.INSURANCE_AUTHORITY 返回对应的 AuthorityClient 实例。

新增保险机构只需：
  1. 在 services.py 新建 XxxClient(BaseAuthorityClient) 类
  2. 在此处 _build_registry 加一行
  不需要修改 visits.services 或任何科室模块。
"""

from django.conf import settings

from .base import BaseAuthorityClient
from .types import FacilityConfig


def get_facility_config() -> FacilityConfig:
    """从 settings 读取 facility 配置（只读，凭证只存在于内存）。"""
    return FacilityConfig(
        api_url=getattr(settings, "NHIF_API_URL", "https://api.nhif.go.tz"),
        username=getattr(settings, "NHIF_USERNAME", ""),
        password=getattr(settings, "NHIF_PASSWORD", ""),
        facility_code=getattr(settings, "NHIF_FACILITY_CODE", ""),
        timeout=float(getattr(settings, "NHIF_TIMEOUT_SECONDS", 10)),
        refresh_margin=int(getattr(settings, "NHIF_TOKEN_REFRESH_MARGIN", 60)),
    )


def _build_registry() -> dict:
    # 延迟导入，避免在 Django 启动前触发 requests session 创建
    from .services import MockAuthorityClient, NHIFClient

    return {
        "nhif": lambda: NHIFClient(get_facility_config()),
        "mock": MockAuthorityClient,
    }


def get_authority_client() -> BaseAuthorityClient:
    """
    从 settings.INSURANCE_AUTHORITY 读取保险机构，返回对应的 client 实例。

    settings.INSURANCE_AUTHORITY 由环境变量 INSURANCE_AUTHORITY 控制（默认 "nhif"）。
    同一 facility 的 client 共享进程级 TokenCache，所以每次请求新建 client 是安全的。

    Raises:
        ValueError: INSURANCE_AUTHORITY 未知
    """
    authority = getattr(settings, "INSURANCE_AUTHORITY", "nhif")
    registry = _build_registry()
    builder = registry.get(authority)

    if builder is None:
        raise ValueError(
            f"Unknown INSURANCE_AUTHORITY: {authority!r}. "
            f"Known authorities: {list(registry.keys())}"
        )

    return builder()

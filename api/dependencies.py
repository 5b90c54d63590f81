"""
API依赖项 - 组装应用服务与内部接口鉴权

服务对象在每个请求中按需构造；渠道适配器来自进程级注册表，配置变更需调用
reset_adapter_registry() 重建。
"""
import hmac
import ipaddress
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, Request

from application.ports.notifier import Notifier
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundOrchestrator
from application.services.settlement_service import SettlementProcessor
from api.middleware.request_id import resolve_client_ip
from core.config import settings
from core.exceptions import ForbiddenException, UnauthorizedException
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import ProviderKind
from infrastructure.external.notifications import build_notifier
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import make_uow_factory


logger = get_logger(__name__)


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return make_uow_factory()


def get_gateway_lookup() -> Callable[[ProviderKind], PaymentGateway]:
    return get_payment_gateway


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return build_notifier(payment_settings)


def get_settlement_processor(
    uow_factory=Depends(get_uow_factory),
    gateway_for=Depends(get_gateway_lookup),
    notifier: Notifier = Depends(get_notifier),
) -> SettlementProcessor:
    return SettlementProcessor(uow_factory, gateway_for, notifier)


def get_refund_orchestrator(
    uow_factory=Depends(get_uow_factory),
    gateway_for=Depends(get_gateway_lookup),
    notifier: Notifier = Depends(get_notifier),
) -> RefundOrchestrator:
    return RefundOrchestrator(uow_factory, gateway_for, notifier, settings=payment_settings.refund)


def get_payment_service(
    uow_factory=Depends(get_uow_factory),
    gateway_for=Depends(get_gateway_lookup),
    settlement: SettlementProcessor = Depends(get_settlement_processor),
) -> PaymentService:
    return PaymentService(uow_factory, gateway_for, settlement)


async def require_internal_token(
    x_internal_token: Optional[str] = Header(default=None, alias="X-Internal-Token"),
) -> None:
    """管理类接口（退款）的共享令牌校验；未配置 INTERNAL_API_TOKEN 时放行"""
    expected = settings.INTERNAL_API_TOKEN
    if not expected:
        return
    if not x_internal_token or not hmac.compare_digest(x_internal_token.encode(), expected.encode()):
        raise UnauthorizedException("Invalid internal token")


def ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    """remote_ip 是否命中白名单（支持单个IP与CIDR）"""
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


async def enforce_webhook_allowlist(request: Request) -> None:
    allowlist = payment_settings.webhook.ip_allowlist or []
    if not allowlist:
        return
    remote_ip = resolve_client_ip(request, trust_forwarded=False)
    if not ip_allowed(remote_ip, allowlist):
        logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
        raise ForbiddenException("Source IP not allowed", details={"remote_ip": remote_ip})

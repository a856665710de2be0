"""Service wiring shared by the API routers"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from jobs.delayed_jobs import DelayedJobScheduler
from services.commission_rules_service import CommissionRuleService
from services.notification_publisher import NotificationDispatcher, NotificationPublisher
from services.order_intake import OrderIntakeService
from services.order_lifecycle import OrderLifecycleService
from services.route_estimator import RouteEstimator
from services.routing_provider import RoutingProvider
from services.settlement_orchestrator import SettlementOrchestrator
from services.wallet_ledger import WalletLedger


@dataclass
class ServiceContainer:
    intake: OrderIntakeService
    lifecycle: OrderLifecycleService
    settlement: SettlementOrchestrator
    ledger: WalletLedger
    rules: CommissionRuleService
    dispatcher: NotificationDispatcher
    scheduler: DelayedJobScheduler

    def shutdown(self):
        self.scheduler.shutdown(wait=False)
        self.dispatcher.shutdown(wait=False)


def build_services(
    session_factory: Optional[sessionmaker] = None,
    routing_provider: Optional[RoutingProvider] = None,
    publisher: Optional[NotificationPublisher] = None,
    scheduler: Optional[DelayedJobScheduler] = None,
    synchronous_notifications: bool = False,
    confirmation_delay_seconds: Optional[float] = None,
) -> ServiceContainer:
    dispatcher = NotificationDispatcher(publisher, synchronous=synchronous_notifications)
    scheduler = scheduler or DelayedJobScheduler()
    ledger = WalletLedger(session_factory)
    rules = CommissionRuleService(session_factory)
    settlement = SettlementOrchestrator(session_factory, ledger=ledger, rule_service=rules, dispatcher=dispatcher)
    lifecycle = OrderLifecycleService(
        session_factory,
        route_estimator=RouteEstimator(routing_provider),
        dispatcher=dispatcher,
        scheduler=scheduler,
        settlement=settlement,
        rule_service=rules,
        confirmation_delay_seconds=confirmation_delay_seconds,
    )
    return ServiceContainer(
        intake=OrderIntakeService(session_factory),
        lifecycle=lifecycle,
        settlement=settlement,
        ledger=ledger,
        rules=rules,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services

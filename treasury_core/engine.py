"""
Treasury Engine

Composition root: builds every component from a TreasuryConfig, wires the
approval executors and scope handlers, and owns the process lifecycle of
the job workers and provider clients.
"""

from typing import Optional

from .approvals import ApprovalExecutors, ApprovalWorkflow, WorkflowType
from .audit import AuditTrail
from .budgets import CLOSE_EXPIRED_BUDGETS_JOB, BudgetManager
from .config import TreasuryConfig
from .counterparty import CounterpartyResolver
from .events import EventDispatcher
from .jobs import InMemoryJobQueue, JobQueue
from .ledger import LedgerCore
from .notifications import NotificationChannel, NotificationService, WebhookChannelProvider
from .payroll import PayrollManager
from .policies import PolicyEngine
from .providers import (
    BankVerificationProvider, HttpBankVerificationProvider, MockBankVerificationProvider,
    ProviderRegistry
)
from .settlement import CLEAR_PENDING_JOB, SettlementReconciler
from .storage import StorageInterface, create_storage
from .transfers import FeeSchedule, TransferService
from .wallets import WalletManager
from .logging_config import get_logger, setup_logging

logger = get_logger("treasury.engine")


class TreasuryEngine:
    """All treasury components, constructed once per process"""

    def __init__(
        self,
        config: TreasuryConfig,
        storage: Optional[StorageInterface] = None,
        providers: Optional[ProviderRegistry] = None,
        bank_verification: Optional[BankVerificationProvider] = None,
        jobs: Optional[JobQueue] = None
    ):
        self.config = config
        setup_logging(config.log_level, log_format=config.log_format)

        self.storage = storage or create_storage(config.database_url)
        self.dispatcher = EventDispatcher()
        self.audit_trail = AuditTrail(self.storage, enabled=config.enable_audit_logging)

        self.notifications = NotificationService(self.storage)
        if config.notification_webhook_url:
            self.notifications.register_provider(
                NotificationChannel.WEBHOOK,
                WebhookChannelProvider(config.notification_webhook_url, config.notification_timeout)
            )
        self.notifications.attach(self.dispatcher)

        self.providers = providers or ProviderRegistry.from_config(config)
        if bank_verification is None:
            if config.bank_verification_base_url:
                bank_verification = HttpBankVerificationProvider(
                    config.bank_verification_base_url, config.bank_verification_api_key,
                    config.provider_timeout
                )
            else:
                bank_verification = MockBankVerificationProvider()
        self.bank_verification = bank_verification

        self.wallets = WalletManager(self.storage, self.audit_trail, default_currency=config.currency)
        self.ledger = LedgerCore(self.storage, self.wallets, self.audit_trail, self.dispatcher)
        self.approvals = ApprovalWorkflow(self.storage, self.audit_trail, self.dispatcher)
        self.budgets = BudgetManager(self.storage, self.wallets, self.ledger, self.audit_trail,
                                     self.dispatcher, approvals=self.approvals)
        self.policies = PolicyEngine(self.storage, self.ledger, self.audit_trail)
        self.counterparties = CounterpartyResolver(self.storage, self.bank_verification, self.audit_trail,
                                                   config.counterparty_cache_ttl_seconds)
        self.jobs = jobs or InMemoryJobQueue(self.storage, self.audit_trail,
                                             max_attempts=config.job_max_attempts,
                                             backoff_seconds=config.job_backoff_seconds)
        self.reconciler = SettlementReconciler(self.ledger, self.providers, self.jobs,
                                               config.requery_after_minutes, config.max_requeries)
        self.jobs.register(CLOSE_EXPIRED_BUDGETS_JOB, lambda payload: self.budgets.close_expired_budgets())
        self.fees = FeeSchedule(config.transfer_fee, config.fee_tiers)
        self.transfers = TransferService(
            self.wallets, self.ledger, self.budgets, self.policies, self.counterparties,
            self.approvals, self.providers, self.reconciler, self.fees, self.dispatcher,
            duplicate_window_seconds=config.duplicate_window_seconds,
            requery_after_seconds=config.requery_after_minutes * 60,
        )
        self.payroll = PayrollManager(self.storage, self.wallets, self.ledger, self.audit_trail,
                                      self.dispatcher, approvals=self.approvals, transfers=self.transfers)

        self.approvals.bind_executors(ApprovalExecutors(
            expense=self.budgets.execute_expense,
            transaction=self.transfers.execute_transfer,
            budget_extension=self.budgets.execute_extension,
            fund_request=self.budgets.execute_fund_request,
            payroll=self.payroll.approve,
            on_declined={
                WorkflowType.EXPENSE: self.budgets.decline_expense,
                WorkflowType.PAYROLL: self.payroll.reject,
            },
        ))
        self.ledger.verify_scope_handlers()
        self._started = False
        self._sweeps_scheduled = False

    @classmethod
    def from_env(cls) -> 'TreasuryEngine':
        return cls(TreasuryConfig())

    def start(self) -> None:
        """Start the job workers and schedule the recurring sweeps"""
        if self._started:
            return
        if not self._sweeps_scheduled:
            self.jobs.schedule_recurring(CLEAR_PENDING_JOB, {}, self.config.clearance_sweep_interval_seconds)
            self.jobs.schedule_recurring(CLOSE_EXPIRED_BUDGETS_JOB, {},
                                         self.config.budget_expiry_sweep_interval_seconds)
            self._sweeps_scheduled = True
        self.jobs.start(self.config.job_workers)
        self._started = True
        logger.info("Treasury engine started")

    def stop(self) -> None:
        """Stop workers and release provider and storage handles"""
        if self._started:
            self.jobs.stop()
            self._started = False
        self.providers.close()
        self.bank_verification.close()
        self.storage.close()
        logger.info("Treasury engine stopped")

    def __enter__(self) -> 'TreasuryEngine':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

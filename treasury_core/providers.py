"""
Provider Clients Module

REST clients for the external transfer and bank-verification providers, plus
deterministic mock implementations for development and testing.

Providers are addressed through the closed ``TransferProviderName`` enum; the
``ProviderRegistry`` refuses to build unless every member has a factory, so an
unsupported provider name fails at startup rather than mid-transfer.
"""

import httpx
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .currency import Currency
from .errors import InvalidAccount, ProviderUnavailable
from .logging_config import get_logger

logger = get_logger("treasury.providers")


class TransferProviderName(Enum):
    """Supported transfer providers"""
    MOCK = "mock"
    HTTP = "http"


class ProviderStatus(Enum):
    """Status reported by a transfer provider"""
    SUCCESSFUL = "successful"
    PENDING = "pending"
    FAILED = "failed"
    REVERSED = "reversed"

    @property
    def is_terminal(self) -> bool:
        return self != ProviderStatus.PENDING


@dataclass(frozen=True)
class BankAccountDetails:
    """Verified identity of an external bank account"""
    account_number: str
    bank_code: str
    account_name: str
    bank_name: str
    bank_id: Optional[str] = None


@dataclass(frozen=True)
class TransferInstruction:
    """Everything a provider needs to push money to a counterparty"""
    reference: str
    amount: int
    currency: Currency
    account_number: str
    bank_code: str
    account_name: str
    narration: str = ""


@dataclass(frozen=True)
class ProviderTransferResult:
    """Normalized provider response"""
    reference: str
    status: ProviderStatus
    provider_ref: Optional[str] = None
    gateway_response: Dict[str, Any] = field(default_factory=dict)
    latency_ms: float = 0.0


class TransferProvider(ABC):
    """Contract every transfer provider implements"""
    name: TransferProviderName

    @abstractmethod
    def initiate_transfer(self, instruction: TransferInstruction) -> ProviderTransferResult:
        """Start a transfer; the result may already be terminal"""
        pass

    @abstractmethod
    def verify_transfer(self, reference: str) -> ProviderTransferResult:
        """Look up the current status of a transfer by provider reference"""
        pass

    def close(self) -> None:
        pass


class BankVerificationProvider(ABC):
    """Contract for account-name resolution"""

    @abstractmethod
    def resolve_account(self, account_number: str, bank_code: str) -> BankAccountDetails:
        pass

    @abstractmethod
    def list_banks(self) -> List[Dict[str, str]]:
        pass

    def close(self) -> None:
        pass


class _HttpProviderClient:
    """Shared httpx plumbing: bearer auth, timeouts and error mapping"""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(
                method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as e:
            logger.error(f"Provider connection failed: {e}")
            raise ProviderUnavailable(f"Provider at {self.base_url} unreachable: {e}") from e

        if response.status_code >= 500:
            logger.warning(f"Provider returned {response.status_code}: {response.text}")
            raise ProviderUnavailable(f"Provider at {self.base_url} returned {response.status_code}")
        return response

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class HttpTransferProvider(_HttpProviderClient, TransferProvider):
    """REST client for a bank transfer API"""
    name = TransferProviderName.HTTP

    def initiate_transfer(self, instruction: TransferInstruction) -> ProviderTransferResult:
        start = time.time()
        response = self._request("POST", "/transfers", json={
            "reference": instruction.reference,
            "amount": instruction.amount,
            "currency": instruction.currency.code,
            "account_number": instruction.account_number,
            "bank_code": instruction.bank_code,
            "account_name": instruction.account_name,
            "narration": instruction.narration,
        })
        latency_ms = (time.time() - start) * 1000

        if response.status_code >= 400:
            # Rejected outright: the provider never took the money
            return ProviderTransferResult(
                reference=instruction.reference,
                status=ProviderStatus.FAILED,
                gateway_response={"status_code": response.status_code, "body": response.text},
                latency_ms=latency_ms,
            )
        return self._parse(instruction.reference, response.json(), latency_ms)

    def verify_transfer(self, reference: str) -> ProviderTransferResult:
        start = time.time()
        response = self._request("GET", f"/transfers/{reference}")
        latency_ms = (time.time() - start) * 1000
        if response.status_code == 404:
            return ProviderTransferResult(reference=reference, status=ProviderStatus.PENDING,
                                          gateway_response={"status_code": 404},
                                          latency_ms=latency_ms)
        if response.status_code >= 400:
            raise ProviderUnavailable(f"Transfer lookup for {reference} returned {response.status_code}")
        return self._parse(reference, response.json(), latency_ms)

    @staticmethod
    def _parse(reference: str, data: Dict[str, Any], latency_ms: float) -> ProviderTransferResult:
        raw_status = str(data.get("status", "pending")).lower()
        try:
            status = ProviderStatus(raw_status)
        except ValueError:
            logger.warning(f"Provider reported unknown status {raw_status!r} for {reference}")
            status = ProviderStatus.PENDING
        return ProviderTransferResult(
            reference=data.get("reference", reference),
            status=status,
            provider_ref=data.get("id") or data.get("provider_ref"),
            gateway_response=data,
            latency_ms=latency_ms,
        )


class HttpBankVerificationProvider(_HttpProviderClient, BankVerificationProvider):
    """REST client for account-name enquiry"""

    def resolve_account(self, account_number: str, bank_code: str) -> BankAccountDetails:
        response = self._request("GET", "/accounts/resolve", params={
            "account_number": account_number,
            "bank_code": bank_code,
        })
        if response.status_code >= 400:
            raise InvalidAccount(f"Account {account_number} at bank {bank_code} could not be resolved")
        data = response.json()
        return BankAccountDetails(
            account_number=account_number,
            bank_code=bank_code,
            account_name=data["account_name"],
            bank_name=data.get("bank_name", ""),
            bank_id=data.get("bank_id"),
        )

    def list_banks(self) -> List[Dict[str, str]]:
        response = self._request("GET", "/banks")
        if response.status_code >= 400:
            raise ProviderUnavailable(f"Bank list returned {response.status_code}")
        return response.json()


class MockTransferProvider(TransferProvider):
    """
    Mock provider for testing.

    Every transfer gets ``default_status`` unless an outcome was scripted for
    its reference with ``script``. ``verify_transfer`` returns whatever was
    last set with ``set_status``.
    """
    name = TransferProviderName.MOCK

    def __init__(self, default_status: ProviderStatus = ProviderStatus.SUCCESSFUL):
        self.default_status = default_status
        self._scripted: Dict[str, ProviderStatus] = {}
        self._statuses: Dict[str, ProviderStatus] = {}
        self._unavailable = False
        self.instructions: List[TransferInstruction] = []

    def script(self, reference: str, status: ProviderStatus) -> None:
        self._scripted[reference] = status

    def set_status(self, provider_ref: str, status: ProviderStatus) -> None:
        self._statuses[provider_ref] = status

    def set_unavailable(self, unavailable: bool = True) -> None:
        self._unavailable = unavailable

    def initiate_transfer(self, instruction: TransferInstruction) -> ProviderTransferResult:
        if self._unavailable:
            raise ProviderUnavailable("Mock provider unavailable")
        self.instructions.append(instruction)
        status = self._scripted.get(instruction.reference, self.default_status)
        provider_ref = f"mock_{uuid.uuid4().hex[:12]}"
        self._statuses[provider_ref] = status
        return ProviderTransferResult(
            reference=instruction.reference,
            status=status,
            provider_ref=provider_ref,
            gateway_response={"status": status.value, "provider": "mock"},
        )

    def verify_transfer(self, reference: str) -> ProviderTransferResult:
        if self._unavailable:
            raise ProviderUnavailable("Mock provider unavailable")
        status = self._statuses.get(reference, ProviderStatus.PENDING)
        return ProviderTransferResult(
            reference=reference,
            status=status,
            provider_ref=reference,
            gateway_response={"status": status.value, "provider": "mock"},
        )


class MockBankVerificationProvider(BankVerificationProvider):
    """Resolves any 10-digit account number to a generated name"""

    BANKS = {
        "058": "Guaranty Trust Bank",
        "044": "Access Bank",
        "033": "United Bank for Africa",
        "011": "First Bank of Nigeria",
    }

    def __init__(self, accounts: Optional[Dict[tuple, str]] = None):
        self.accounts = dict(accounts or {})
        self.calls = 0

    def resolve_account(self, account_number: str, bank_code: str) -> BankAccountDetails:
        self.calls += 1
        if not (account_number.isdigit() and len(account_number) == 10) or bank_code not in self.BANKS:
            raise InvalidAccount(f"Account {account_number} at bank {bank_code} could not be resolved")
        account_name = self.accounts.get((account_number, bank_code), f"Account Holder {account_number[-4:]}")
        return BankAccountDetails(
            account_number=account_number,
            bank_code=bank_code,
            account_name=account_name,
            bank_name=self.BANKS[bank_code],
            bank_id=bank_code,
        )

    def list_banks(self) -> List[Dict[str, str]]:
        return [{"code": code, "name": name} for code, name in self.BANKS.items()]


ProviderFactory = Callable[[], TransferProvider]


class ProviderRegistry:
    """Lazily built transfer providers, one per ``TransferProviderName``"""

    def __init__(self, factories: Dict[TransferProviderName, ProviderFactory],
                 default: TransferProviderName = TransferProviderName.MOCK):
        missing = [name.value for name in TransferProviderName if name not in factories]
        if missing:
            raise ValueError(f"No factory registered for transfer providers: {', '.join(missing)}")
        self._factories = dict(factories)
        self._instances: Dict[TransferProviderName, TransferProvider] = {}
        self.default = default

    @classmethod
    def from_config(cls, config) -> 'ProviderRegistry':
        return cls({
            TransferProviderName.MOCK: MockTransferProvider,
            TransferProviderName.HTTP: lambda: HttpTransferProvider(
                config.provider_base_url, config.provider_api_key, config.provider_timeout
            ),
        }, default=TransferProviderName(config.default_transfer_provider))

    @staticmethod
    def parse_name(name: Optional[str]) -> Optional[TransferProviderName]:
        if name is None:
            return None
        try:
            return TransferProviderName(name)
        except ValueError:
            raise ProviderUnavailable(f"Unknown transfer provider {name!r}") from None

    def get(self, name: Optional[TransferProviderName] = None) -> TransferProvider:
        name = name or self.default
        if name not in self._instances:
            self._instances[name] = self._factories[name]()
        return self._instances[name]

    def close(self) -> None:
        for provider in self._instances.values():
            provider.close()
        self._instances.clear()

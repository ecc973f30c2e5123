import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ADDRESS_RE = re.compile(r"^0x[a-f0-9]{40}$")

EXECUTION_BACKENDS = ("conway", "vultisig")
BROKER_MODES = ("outbox", "http")


def normalize_address(address: str) -> str:
    return address.strip().lower()


def parse_address_allowlist(raw: Optional[str]) -> FrozenSet[str]:
    """Parse a comma separated allowlist, keeping only well-formed 0x addresses."""
    if not raw or not raw.strip():
        return frozenset()
    values = (normalize_address(v) for v in raw.split(","))
    return frozenset(v for v in values if _ADDRESS_RE.match(v))


@dataclass(frozen=True)
class PolicyConfig:
    enabled: bool = True
    require_allowlist: bool = True
    allowlisted_recipients: FrozenSet[str] = field(default_factory=frozenset)
    min_reserve_cents: int = 500
    auto_approve_max_cents: int = 100
    hard_per_transfer_cents: int = 5000
    hard_daily_limit_cents: int = 10_000
    auto_execute_approved: bool = False


@dataclass(frozen=True)
class BrokerConfig:
    mode: str = "outbox"
    outbox_dir: str = os.path.expanduser("~/.automaton/vultisig-outbox")
    broker_url: Optional[str] = None
    broker_token: Optional[str] = None
    request_timeout_ms: int = 10_000
    vault_policy_profile: str = "secure"


@dataclass(frozen=True)
class AlertConfig:
    enabled: bool = True
    bot_token: str = ""
    chat_id: str = ""
    explorer_template: str = ""
    dedup_enabled: bool = True
    dedup_window_seconds: int = 60
    queue_size: int = 100
    max_retries: int = 3

    @property
    def active(self) -> bool:
        return bool(self.enabled and self.bot_token and self.chat_id)


# Block explorers keyed by AUTOMATON_VULTISIG_SEND_CHAIN
EXPLORER_TX_TEMPLATES = {
    "base": "https://basescan.org/tx/{tx}",
    "ethereum": "https://etherscan.io/tx/{tx}",
    "arbitrum": "https://arbiscan.io/tx/{tx}",
    "optimism": "https://optimistic.etherscan.io/tx/{tx}",
    "polygon": "https://polygonscan.com/tx/{tx}",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AUTOMATON_", env_file=".env", extra="ignore")

    # Spend policy
    TREASURY_POLICY_ENABLED: bool = True
    TREASURY_REQUIRE_ALLOWLIST: bool = True
    TREASURY_ALLOWLIST: str = ""
    TREASURY_MIN_RESERVE_CENTS: int = 500
    TREASURY_AUTO_APPROVE_MAX_CENTS: int = 100
    TREASURY_HARD_PER_TRANSFER_CENTS: int = 5000
    TREASURY_HARD_DAILY_LIMIT_CENTS: int = 10_000
    TREASURY_AUTO_EXECUTE_APPROVED: bool = False
    # Execution
    TREASURY_EXECUTION_BACKEND: str = "vultisig"
    VULTISIG_BROKER_MODE: str = "outbox"
    VULTISIG_OUTBOX_DIR: str = "~/.automaton/vultisig-outbox"
    VULTISIG_BROKER_URL: Optional[str] = None
    VULTISIG_BROKER_TOKEN: Optional[str] = None
    VULTISIG_BROKER_TIMEOUT_MS: int = 10_000
    VULTISIG_VAULT_POLICY_PROFILE: str = "secure"
    VULTISIG_SEND_CHAIN: str = ""
    # Telegram alerts
    TREASURY_TELEGRAM_ALERTS_ENABLED: bool = True
    TREASURY_TELEGRAM_BOT_TOKEN: str = ""
    TREASURY_TELEGRAM_CHAT_ID: str = ""
    TREASURY_TX_EXPLORER_TX_URL_TEMPLATE: str = ""
    TREASURY_ALERT_DEDUP_ENABLED: bool = True
    TREASURY_ALERT_DEDUP_WINDOW_SECONDS: int = 60
    TREASURY_ALERT_QUEUE_SIZE: int = 100
    TREASURY_ALERT_MAX_RETRIES: int = 3
    # Persistence
    TREASURY_DB_DSN: str = "sqlite+aiosqlite:///./treasury.db"
    TREASURY_REDIS_URL: Optional[str] = None
    # Observability
    LOG_LEVEL: str = "INFO"
    METRICS_PORT: Optional[int] = None

    @field_validator(
        "TREASURY_POLICY_ENABLED",
        "TREASURY_REQUIRE_ALLOWLIST",
        "TREASURY_AUTO_EXECUTE_APPROVED",
        "TREASURY_TELEGRAM_ALERTS_ENABLED",
        "TREASURY_ALERT_DEDUP_ENABLED",
        mode="before",
    )
    @classmethod
    def _env_flag(cls, v, info):
        # blank keeps the default; anything outside 1/true/yes/on is off
        if isinstance(v, bool):
            return v
        if v is None or str(v).strip() == "":
            return cls.model_fields[info.field_name].default
        return str(v).strip().lower() in ("1", "true", "yes", "on")

    @field_validator("METRICS_PORT", mode="before")
    @classmethod
    def _blank_port(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator(
        "TREASURY_MIN_RESERVE_CENTS",
        "TREASURY_AUTO_APPROVE_MAX_CENTS",
        "TREASURY_HARD_PER_TRANSFER_CENTS",
        "TREASURY_HARD_DAILY_LIMIT_CENTS",
        "VULTISIG_BROKER_TIMEOUT_MS",
        mode="before",
    )
    @classmethod
    def _floor_number(cls, v, info):
        # unparseable or non-finite numbers fall back to the field default
        try:
            return int(float(v))
        except (TypeError, ValueError, OverflowError):
            return cls.model_fields[info.field_name].default

    @field_validator("TREASURY_MIN_RESERVE_CENTS", "TREASURY_AUTO_APPROVE_MAX_CENTS")
    @classmethod
    def _at_least_zero(cls, v: int) -> int:
        return max(0, v)

    @field_validator("TREASURY_HARD_PER_TRANSFER_CENTS", "TREASURY_HARD_DAILY_LIMIT_CENTS")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("VULTISIG_BROKER_TIMEOUT_MS")
    @classmethod
    def _min_timeout(cls, v: int) -> int:
        return max(1000, v)

    @field_validator("TREASURY_EXECUTION_BACKEND", mode="before")
    @classmethod
    def _backend(cls, v) -> str:
        return "conway" if str(v or "").strip().lower() == "conway" else "vultisig"

    @field_validator("VULTISIG_BROKER_MODE", mode="before")
    @classmethod
    def _broker_mode(cls, v) -> str:
        return "http" if str(v or "").strip().lower() == "http" else "outbox"

    def policy_config(self) -> PolicyConfig:
        return PolicyConfig(
            enabled=self.TREASURY_POLICY_ENABLED,
            require_allowlist=self.TREASURY_REQUIRE_ALLOWLIST,
            allowlisted_recipients=parse_address_allowlist(self.TREASURY_ALLOWLIST),
            min_reserve_cents=self.TREASURY_MIN_RESERVE_CENTS,
            auto_approve_max_cents=self.TREASURY_AUTO_APPROVE_MAX_CENTS,
            hard_per_transfer_cents=self.TREASURY_HARD_PER_TRANSFER_CENTS,
            hard_daily_limit_cents=self.TREASURY_HARD_DAILY_LIMIT_CENTS,
            auto_execute_approved=self.TREASURY_AUTO_EXECUTE_APPROVED,
        )

    def broker_config(self) -> BrokerConfig:
        return BrokerConfig(
            mode=self.VULTISIG_BROKER_MODE,
            outbox_dir=os.path.expanduser(self.VULTISIG_OUTBOX_DIR),
            broker_url=self.VULTISIG_BROKER_URL or None,
            broker_token=self.VULTISIG_BROKER_TOKEN or None,
            request_timeout_ms=self.VULTISIG_BROKER_TIMEOUT_MS,
            vault_policy_profile=self.VULTISIG_VAULT_POLICY_PROFILE or "secure",
        )

    def explorer_template(self) -> str:
        if self.TREASURY_TX_EXPLORER_TX_URL_TEMPLATE.strip():
            return self.TREASURY_TX_EXPLORER_TX_URL_TEMPLATE.strip()
        return EXPLORER_TX_TEMPLATES.get(self.VULTISIG_SEND_CHAIN.strip().lower(), "")

    def alert_config(self) -> AlertConfig:
        return AlertConfig(
            enabled=self.TREASURY_TELEGRAM_ALERTS_ENABLED,
            bot_token=self.TREASURY_TELEGRAM_BOT_TOKEN.strip(),
            chat_id=self.TREASURY_TELEGRAM_CHAT_ID.strip(),
            explorer_template=self.explorer_template(),
            dedup_enabled=self.TREASURY_ALERT_DEDUP_ENABLED,
            dedup_window_seconds=max(0, self.TREASURY_ALERT_DEDUP_WINDOW_SECONDS),
            queue_size=max(1, self.TREASURY_ALERT_QUEUE_SIZE),
            max_retries=max(0, self.TREASURY_ALERT_MAX_RETRIES),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

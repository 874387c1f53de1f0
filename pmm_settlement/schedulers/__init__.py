from pmm_settlement.schedulers.balance_monitor import BalanceMonitorScheduler
from pmm_settlement.schedulers.base import Ticker
from pmm_settlement.schedulers.nonce_refresh import NonceRefreshScheduler
from pmm_settlement.schedulers.pending_verification import PendingVerificationScheduler, VerifyOutcome, quote_job_id
from pmm_settlement.schedulers.settlement_monitor import SettlementMonitorScheduler
from pmm_settlement.schedulers.swap_status import SwapStatusScheduler

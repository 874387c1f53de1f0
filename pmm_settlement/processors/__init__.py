from pmm_settlement.processors.quote_processor import QuoteDefaults, QuoteProcessor, transfer_job_id
from pmm_settlement.processors.settlement_processor import SettlementSubmitProcessor, SettlementTransferProcessor
from pmm_settlement.processors.transfer_processor import TransferProcessor
from pmm_settlement.processors.work_queue import Job, JobState, WorkQueue

from pmm_settlement.settlement.strategies.btc import BtcTransferStrategy
from pmm_settlement.settlement.strategies.evm import EvmTransferStrategy
from pmm_settlement.settlement.strategies.evm_liquidation import EvmLiquidationTransferStrategy
from pmm_settlement.settlement.strategies.solana import SolanaTransferStrategy

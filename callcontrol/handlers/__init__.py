from .transfer_controller import TransferController, TransferProgress, TransferRecord

__all__ = [
    "TransferController",
    "TransferProgress",
    "TransferRecord",
]

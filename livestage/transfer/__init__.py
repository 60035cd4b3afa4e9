"""
File transfer multiplexed over the signaling channel.
"""

from .chunked import (
    FileMeta,
    FileSender,
    ReceivedFile,
    Transfer,
    TransferReceiver,
    save_received_file,
)

__all__ = [
    "FileMeta",
    "FileSender",
    "ReceivedFile",
    "Transfer",
    "TransferReceiver",
    "save_received_file",
]

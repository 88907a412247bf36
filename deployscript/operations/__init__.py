"""Operations (transfer, backup, clean)"""
from .transfer import download_tree, upload_tree, upload
from .backup import backup
from .clean import clean

__all__ = [
    "download_tree", "upload_tree", "upload",
    "backup",
    "clean",
]

from .abstract_storage import AbstractStorage
from .filesystem_storage import FileSystemStorage
from .media_store import MediaAsset, MediaStore

__all__ = ['AbstractStorage', 'FileSystemStorage', 'MediaAsset', 'MediaStore']

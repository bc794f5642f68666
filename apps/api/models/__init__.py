"""Models package."""

from .user import User
from .image import Image
from .transaction import Transaction

from .base import BaseRepository, EventRepository
from .mongodb import MongoEventRepository

__all__ = ["BaseRepository", "EventRepository", "MongoEventRepository"]

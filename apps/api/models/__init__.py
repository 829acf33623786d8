"""Models package."""

from .user import User
from .asset import Asset, asset_tags
from .tag import Tag
from .room import Room
from .scratch_item import ScratchItem
from .webhook_event import WebhookEvent

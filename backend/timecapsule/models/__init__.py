# backend/timecapsule/models/__init__.py
from .capsule import Capsule
from .attachment import CapsuleAttachment

__all__ = ["Capsule", "CapsuleAttachment"]

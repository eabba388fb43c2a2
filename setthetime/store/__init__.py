"""Persistent store abstractions and implementations."""

from .base import Booking, BookingStore, MeetingType, TokenBundle

__all__ = ["Booking", "BookingStore", "MeetingType", "TokenBundle"]

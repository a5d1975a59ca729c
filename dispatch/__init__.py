"""Outbound Dispatch Queue: humanized scheduling, daily caps and the background dispatcher."""
from dispatch.humanize import compute_delay_ms, delay_bounds_ms, typing_time_ms
from dispatch.queue import CapacityExceeded, DispatchQueue
from dispatch.dispatcher import Dispatcher

__all__ = [
    "compute_delay_ms", "delay_bounds_ms", "typing_time_ms",
    "CapacityExceeded", "DispatchQueue", "Dispatcher",
]

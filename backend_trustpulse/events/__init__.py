from backend_trustpulse.events.bus import CycleEventBus

__all__ = ["CycleEventBus"]

from salesops.platform.security.context import SYSTEM_ACTOR_ID, ActorContext

__all__ = ["ActorContext", "SYSTEM_ACTOR_ID"]

from derby_live.errors import OwnershipConflict


class TimerOwnership:
    """
    Claim and release of the race timer.

    Both operations are a single conditional update inside the store; there is
    no read-before-write here, so two actors claiming at once can never both win.
    """

    def __init__(self, store):
        self.store = store

    def claim(self, actor_id: str) -> bool:
        if not actor_id:
            raise ValueError("actor_id must be a non-empty string.")
        return bool(self.store.claim_timer(actor_id))

    def release(self, actor_id: str) -> bool:
        return bool(self.store.release_timer(actor_id))

    def require(self, actor_id: str):
        """Claims the timer or raises OwnershipConflict naming the current owner."""
        if self.claim(actor_id):
            return
        state = self.store.read()
        raise OwnershipConflict(actor_id, state.timer_owner if state else None)

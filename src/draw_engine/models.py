SCHEDULED = 'scheduled'
COMPLETED = 'completed'

GROUP_IN_PROGRESS = 'in_progress'
GROUP_COMPLETED = 'completed'


class Slot:
    """One side of a match: empty (waiting for a feeder match), a bye, or a player."""

    EMPTY = 'empty'
    BYE = 'bye'
    FILLED = 'filled'

    def __init__(self, state, uid=None, name=None, seed=None):
        if state not in (self.EMPTY, self.BYE, self.FILLED):
            raise ValueError(f"Unknown slot state: {state}")
        self.state = state
        self.uid = uid if state == self.FILLED else None
        self.name = name if state == self.FILLED else None
        self.seed = seed if state == self.FILLED else None

    @classmethod
    def empty(cls):
        return cls(cls.EMPTY)

    @classmethod
    def bye(cls):
        return cls(cls.BYE)

    @classmethod
    def filled(cls, uid, name, seed=None):
        return cls(cls.FILLED, uid=uid, name=name, seed=seed)

    @classmethod
    def from_player(cls, player):
        if player is None:
            return cls.bye()
        return cls.filled(player['uid'], player['name'], player.get('seed'))

    @property
    def is_filled(self):
        return self.state == self.FILLED

    @property
    def is_bye(self):
        return self.state == self.BYE

    def to_dict(self):
        data = {'state': self.state}
        if self.is_filled:
            data.update({'uid': self.uid, 'name': self.name, 'seed': self.seed})
        return data

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls.empty()
        return cls(data.get('state', cls.EMPTY), data.get('uid'), data.get('name'), data.get('seed'))

    def __eq__(self, other):
        if not isinstance(other, Slot):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        if self.is_filled:
            return f"Slot(filled, uid={self.uid}, name={self.name}, seed={self.seed})"
        return f"Slot({self.state})"


class ScoringConfig:
    def __init__(self, win, loss, withdraw):
        self.win = win
        self.loss = loss
        self.withdraw = withdraw

    @classmethod
    def from_dict(cls, data, defaults=None):
        """Build from a (possibly partial) dict, filling gaps from defaults."""
        merged = dict(defaults or {})
        merged.update({k: v for k, v in (data or {}).items() if v is not None})
        return cls(int(merged.get('win', 0)), int(merged.get('loss', 0)), int(merged.get('withdraw', 0)))

    def loser_points(self, is_withdrawal):
        return self.withdraw if is_withdrawal else self.loss

    def to_dict(self):
        return {'win': self.win, 'loss': self.loss, 'withdraw': self.withdraw}

    def __repr__(self):
        return f"ScoringConfig(win={self.win}, loss={self.loss}, withdraw={self.withdraw})"


def match_slots(match):
    """Return (player1, player2) slots of a stored match document."""
    return Slot.from_dict(match.get('player1')), Slot.from_dict(match.get('player2'))


def loser_of(match):
    """uid of the player who lost a completed match, or None for byes."""
    winner_id = match.get('winner_id')
    if not winner_id:
        return None
    player1, player2 = match_slots(match)
    if player1.is_filled and player1.uid == winner_id:
        return player2.uid if player2.is_filled else None
    if player2.is_filled and player2.uid == winner_id:
        return player1.uid if player1.is_filled else None
    return None


def in_category(doc, category):
    """True when no category filter is given or the document belongs to it."""
    return not category or doc.get('category') == category

"""Messages flowing between pipeline stages."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


class _Terminal:
    """Shutdown marker. There is exactly one instance: ``TERMINAL``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'TERMINAL'

    def __reduce__(self):
        return (_Terminal, ())


TERMINAL = _Terminal()


@dataclass
class Read:
    """A read travelling from signal to basecalled sequence."""

    read_id: str
    signal: Optional[np.ndarray] = None
    seq: Optional[str] = None
    qstring: Optional[str] = None
    moves: Optional[np.ndarray] = None
    model_stride: int = 1
    tags: dict = field(default_factory=dict)

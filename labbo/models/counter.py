# labbo/models/counter.py
from beanie import Document


class SequenceCounter(Document):
    """Holds the last issued value of a named sequence (the name is the _id)."""
    id: str
    value: int = 0

    class Settings:
        name = "sequence_counters"

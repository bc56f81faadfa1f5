from collections import OrderedDict


class OrderPreservingDict(OrderedDict):
    """Special dictionary that preserves key order for plists"""

    def __eq__(self, other):
        if isinstance(other, dict):
            return dict(self) == dict(other)
        return super().__eq__(other)

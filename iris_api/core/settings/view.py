from __future__ import annotations

from typing import Any


class SettingsView:
    """Attribute passthrough to the root Settings for a fixed set of field names.

    Reads and writes both land on the root object, so a view never holds
    its own copy of a value. Names outside FIELD_NAMES stay local to the view.
    """

    FIELD_NAMES: tuple[str, ...] = ()

    def __init__(self, root: Any) -> None:
        object.__setattr__(self, "_root", root)

    def __getattr__(self, name: str) -> Any:
        if name in type(self).FIELD_NAMES:
            return getattr(self._root, name)
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in type(self).FIELD_NAMES:
            setattr(self._root, name, value)
        else:
            object.__setattr__(self, name, value)

    def as_dict(self) -> dict[str, Any]:
        return {name: getattr(self._root, name) for name in type(self).FIELD_NAMES}

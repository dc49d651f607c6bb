"""JSON value types used on the tsserver wire.

Envelopes and bodies crossing the transport are declared with these aliases
rather than ``Any`` so the boundary stays explicit about what it carries.
"""

from __future__ import annotations

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]
JSONArray: TypeAlias = list[JSONValue]

"""Strict YAML parsing for server-set files.

A server set decides which commands the proxy spawns, so a YAML file
must read the same way to a reviewer as it does to the loader.
``yaml.safe_load()`` falls short of that in three ways, each rejected
here with the offending line:

- a repeated key (two ``servers:`` blocks) silently keeps the last one;
- merge keys (``<<: *base``) pull entries in from elsewhere in the file;
- non-string keys (``1:``, ``on:``) become ints and bools, which then
  no longer match the server name a user typed.

Anchors and aliases on plain values are still accepted.
"""

from __future__ import annotations

from typing import IO, Any, Union

import yaml

_MERGE_TAG = "tag:yaml.org,2002:merge"


class ServerSetYamlError(ValueError):
    """Raised for YAML constructs a server-set file may not use."""

    def __init__(self, message: str, mark: yaml.Mark | None = None) -> None:
        if mark is not None:
            message = f"{message} (line {mark.line + 1}, column {mark.column + 1})"
        super().__init__(message)


class _ServerSetLoader(yaml.SafeLoader):
    """SafeLoader with strict mapping construction."""

    def construct_mapping(self, node, deep=False):
        if not isinstance(node, yaml.MappingNode):
            raise ServerSetYamlError("Expected a mapping", node.start_mark)
        mapping: dict[str, Any] = {}
        for key_node, value_node in node.value:
            if key_node.tag == _MERGE_TAG:
                raise ServerSetYamlError(
                    "YAML merge keys ('<<') are not allowed", key_node.start_mark,
                )
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, str):
                raise ServerSetYamlError(
                    f"YAML keys must be strings, got {type(key).__name__} {key!r}",
                    key_node.start_mark,
                )
            if key in mapping:
                raise ServerSetYamlError(
                    f"Duplicate YAML key: {key!r}", key_node.start_mark,
                )
            mapping[key] = self.construct_object(value_node, deep=deep)
        return mapping


def safe_yaml_load(stream: Union[str, IO[str]]) -> Any:
    """Parse a server-set YAML document.

    Raises:
        ServerSetYamlError: On duplicate keys, merge keys or non-string keys.
        yaml.YAMLError: If the text is not YAML at all.
    """
    return yaml.load(stream, Loader=_ServerSetLoader)

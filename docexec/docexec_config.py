"""
Rewriter configuration loaded from YAML, JSON or TOML files.

Example (`docexec.yaml`):

    lang: python
    exec-attribute: exec
    group-attribute: group
    default-group: main
    warn-on-error: true
    strict: false
"""
import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import yaml

from docexec.docexec_datatypes import ConfigurationError
from docexec.docexec_document import Node, SelectAttrEq, SelectHasAttr, SelectTag, Selector
from docexec.docexec_serialize import deserialize, format_from_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewriterConfig:
    """Declarative form of the rewriter's selector, group naming, warning and strict-mode options."""
    tag: str = "codeblock"
    lang: Optional[str] = "python"
    exec_attribute: Optional[str] = "exec"
    group_attribute: str = "group"
    default_group: str = "main"
    warn_on_error: bool = True
    strict: bool = False

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> 'RewriterConfig':
        if mapping is None:
            return cls()
        if not isinstance(mapping, Mapping):
            raise ConfigurationError(f"Configuration must be a mapping, got {type(mapping).__name__}")

        fields = {f.name: f for f in dataclasses.fields(cls)}
        values = {}
        for key, value in mapping.items():
            name = str(key).replace("-", "_")
            if name not in fields:
                raise ConfigurationError(f"Unknown configuration key: {key!r}")
            values[name] = value

        for name, value in values.items():
            if name in ("warn_on_error", "strict"):
                if not isinstance(value, bool):
                    raise ConfigurationError(f"{name.replace('_', '-')} must be true or false, got {value!r}")
            elif name in ("lang", "exec_attribute"):
                if value is not None and not isinstance(value, str):
                    raise ConfigurationError(f"{name.replace('_', '-')} must be a string or null, got {value!r}")
            elif not isinstance(value, str) or not value:
                raise ConfigurationError(f"{name.replace('_', '-')} must be a non-empty string, got {value!r}")
        return cls(**values)

    def selector(self) -> Selector:
        sel = SelectTag(self.tag)
        if self.lang is not None:
            sel = sel & SelectAttrEq("lang", self.lang)
        if self.exec_attribute is not None:
            sel = sel & SelectHasAttr(self.exec_attribute)
        return sel

    def group_fn(self) -> Callable[[Node], str]:
        attribute, default = self.group_attribute, self.default_group

        def group_fn(node: Node) -> str:
            return node.attributes.get(attribute) or default
        return group_fn


def load_config(path) -> RewriterConfig:
    """Reads a `RewriterConfig` from a .yaml/.yml/.json/.toml file."""
    p = Path(path)
    fmt = format_from_path(p.name)
    if fmt is None:
        raise ConfigurationError(f"Unsupported configuration file type: {p.name}")
    try:
        data = deserialize(p.read_bytes(), fmt=fmt)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {p}: {e}") from e
    except (ValueError, yaml.YAMLError) as e:
        # json.JSONDecodeError and tomllib.TOMLDecodeError are ValueErrors
        raise ConfigurationError(f"Malformed configuration file {p}: {e}") from e
    logger.info("Loaded configuration from %s", p)
    return RewriterConfig.from_mapping(data)

"""
Label-driven reporter configuration.

Mesos tasks carry free-form labels. complainer reads labels in the
``complainer_`` namespace to decide which reporter instances receive a
failure and which settings each instance uses:

    complainer_<name>_<reporter>_instances
    complainer_<reporter>_instances                      (name == default)
    complainer_<name>_<reporter>_instance_<instance>_<key>
    complainer_<reporter>_instance_<instance>_<key>      (name == default)
    complainer_<name>_<reporter>_<key>                   (instance == default)
    complainer_<reporter>_<key>                          (both default)

The narrowest key that applies always wins.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional


DEFAULT_NAME = "default"
DEFAULT_INSTANCE = "default"

ConfigProvider = Callable[[str], str]


class Labels:
    """Task labels seen through the eyes of one complainer identity."""

    def __init__(
        self,
        complainer: str,
        labels: Optional[Dict[str, str]] = None,
        implicit_defaults: bool = True,
    ):
        self.complainer = complainer
        self.labels = dict(labels or {})
        self.implicit_defaults = implicit_defaults

    def instances(self, reporter: str) -> List[str]:
        """
        Get the instances of a reporter that should receive the failure.

        The first instances key present in the labels decides, even when
        its value is empty (which disables the reporter for this task).
        """
        keys = [f"complainer_{self.complainer}_{reporter}_instances"]

        if self.complainer == DEFAULT_NAME:
            keys.append(f"complainer_{reporter}_instances")

        for key in keys:
            if key in self.labels:
                value = self.labels[key]
                if value == "":
                    return []
                return value.split(",")

        if not self.implicit_defaults:
            return []

        return [DEFAULT_INSTANCE]

    def instance_value(self, reporter: str, instance: str, key: str) -> str:
        """Get a setting for a reporter instance, or "" when unset."""
        keys = [f"complainer_{self.complainer}_{reporter}_instance_{instance}_{key}"]

        if self.complainer == DEFAULT_NAME:
            keys.append(f"complainer_{reporter}_instance_{instance}_{key}")

        if instance == DEFAULT_INSTANCE:
            keys.append(f"complainer_{self.complainer}_{reporter}_{key}")

        if self.complainer == DEFAULT_NAME and instance == DEFAULT_INSTANCE:
            keys.append(f"complainer_{reporter}_{key}")

        for candidate in keys:
            value = self.labels.get(candidate, "")
            if value:
                return value

        return ""

    def config_provider(self, reporter: str, instance: str) -> ConfigProvider:
        """Bind instance_value to one reporter instance."""

        def config(key: str) -> str:
            return self.instance_value(reporter, instance, key)

        return config

    def __repr__(self) -> str:
        return f"Labels({self.complainer!r}, {self.labels!r})"

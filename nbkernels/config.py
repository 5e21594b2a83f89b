"""Settings which control kernel discovery and kernel sessions."""

from __future__ import annotations

import json
import logging
import os
from ast import literal_eval
from pathlib import Path
from typing import TYPE_CHECKING

import fastjsonschema
from platformdirs import user_config_dir
from prompt_toolkit.utils import Event

from nbkernels import __app_name__

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from typing import Any, ClassVar


log = logging.getLogger(__name__)

_JSON_TYPES: dict[type | Callable, str] = {
    bool: "boolean",
    str: "string",
    int: "integer",
    float: "number",
    list: "array",
    dict: "object",
}


class PathJSONEncoder(json.JSONEncoder):
    """A JSON encoder which writes paths as strings."""

    def default(self, o: Any) -> Any:
        """Encode paths, deferring to the standard encoder for anything else."""
        if isinstance(o, Path):
            return str(o)
        return super().default(o)


_encoder = PathJSONEncoder()


def _literal(raw: str) -> Any:
    """Interpret an environment variable as a Python literal, if it is one."""
    if not raw:
        return raw
    try:
        return literal_eval(raw)
    except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
        return raw


class Setting:
    """A single named setting, with a default value and a JSON schema."""

    def __init__(
        self,
        name: str,
        group: str | Sequence[str],
        default: Any = None,
        help_: str = "",
        description: str = "",
        type_: Callable[[Any], Any] | None = None,
        title: str | None = None,
        choices: list[Any] | None = None,
        schema: dict[str, Any] | None = None,
        hooks: list[Callable[[Setting], None]] | None = None,
    ) -> None:
        """Describe a new setting.

        Args:
            name: The attribute name of the setting
            group: The module or modules which use the setting
            default: The value used when the setting is not configured
            help_: A short description of the setting
            description: A longer description of the setting
            type_: Converts configured values. Defaults to the type of the default
            title: A human readable name for the setting
            choices: The permitted values, if restricted
            schema: Additional JSON schema validation keywords
            hooks: Called when the setting's value is changed
        """
        self.name = name
        self.groups = {group} if isinstance(group, str) else set(group)
        self.default = default
        self.help = help_
        self.description = description
        self.type = type_ or type(default)
        self.title = title or name.replace("_", " ")
        self.choices = choices
        self.extra_schema = {"type": _JSON_TYPES.get(self.type), **(schema or {})}
        self.hooks = hooks or []

    @property
    def schema(self) -> dict[str, Any]:
        """The JSON schema property validating this setting's values."""
        schema: dict[str, Any] = {"description": self.help}
        if self.default is not None:
            schema["default"] = self.default
        schema.update({k: v for k, v in self.extra_schema.items() if v is not None})
        if self.choices:
            schema["enum"] = self.choices
        return schema

    def parse(self, value: Any) -> Any:
        """Convert a configured value to the setting's type where possible."""
        if isinstance(value, (list, dict)):
            return value
        try:
            return self.type(value)
        except (ValueError, TypeError):
            return value

    def __repr__(self) -> str:
        """Represent the setting as a string."""
        return f"<Setting {self.name}: {self.type}>"


class SettingNamespace:
    """An object with an attribute for every setting, created when first accessed."""

    def __init__(self, factory: Callable[[str], Any]) -> None:
        """Create the attribute for a setting name with ``factory``."""
        self._factory = factory

    def __getattr__(self, name: str) -> Any:
        """Create and remember the attribute for a setting."""
        if name.startswith("_"):
            raise AttributeError(name)
        value = self._factory(name)
        setattr(self, name, value)
        return value


class Config:
    """The values of every registered setting.

    Values come from, in increasing order of precedence, the setting defaults, the
    user's JSON configuration file, ``NBKERNELS_*`` environment variables, and
    key-word arguments given to the constructor. Changing a setting's value fires
    its event in :py:attr:`events` and writes it to the configuration file.
    """

    _settings: ClassVar[dict[str, Setting]] = {}

    def __init__(self, config_file: str | Path | None = None, **kwargs: Any) -> None:
        """Create a configuration using defaults and the given values.

        Call :py:meth:`load` to read the configuration file and the environment.

        Args:
            config_file: The JSON configuration file. Defaults to ``config.json`` in
                the user's configuration directory
            kwargs: Setting values, which take precedence over every other source
        """
        from nbkernels import _settings  # noqa: F401

        if config_file is None:
            config_file = Path(user_config_dir(__app_name__, appauthor=None))
            config_file /= "config.json"
        self.config_file = Path(config_file).with_suffix(".json")
        self._readable = True
        self._check = fastjsonschema.compile(self._schema, use_default=False)

        self.events = SettingNamespace(
            lambda name: Event(self._settings[name], self._write_setting)
        )
        self.defaults = SettingNamespace(lambda name: self._settings[name].default)
        self.choices = SettingNamespace(lambda name: self._settings[name].choices)
        for setting in self._settings.values():
            for hook in setting.hooks:
                getattr(self.events, setting.name).add_handler(hook)

        self._overrides = dict(kwargs)
        self._values = {name: s.default for name, s in self._settings.items()}
        self._values.update(kwargs)

    def load(self) -> None:
        """Read settings from the configuration file and the environment.

        Logging is configured afterwards, and messages logged while loading are
        only emitted once it has been.
        """
        from nbkernels.log import BufferedLogs, setup_logs

        with BufferedLogs(logger=log):
            try:
                for source, values in (
                    ("config file", self._read_file()),
                    ("environment variable", self._read_env()),
                ):
                    self._values.update(self._validate(values, source))
                self._values.update(self._overrides)
            finally:
                setup_logs(self)

    @property
    def settings(self) -> dict[str, Setting]:
        """The registered settings, by name."""
        return dict(self._settings)

    @property
    def _schema(self) -> dict[str, Any]:
        return {
            "title": f"{__app_name__} configuration",
            "type": "object",
            "properties": {name: s.schema for name, s in self._settings.items()},
        }

    def _validate(self, values: dict[str, Any], source: str) -> dict[str, Any]:
        """Drop unknown settings and values which do not match their schema."""
        valid = {}
        for name, value in values.items():
            if name not in self._settings:
                log.warning("Unknown setting `%s` in %s", name, source)
                continue
            # Validate the value as it would be stored
            data = json.loads(_encoder.encode({name: value}))
            try:
                self._check(data)
            except fastjsonschema.JsonSchemaValueException as error:
                log.warning(
                    "Invalid %s setting `%s = %r`: %s",
                    source,
                    name,
                    value,
                    error.message.replace("data.", ""),
                )
            else:
                valid[name] = value
        return valid

    def _read_json(self) -> dict[str, Any]:
        if not self._readable or not self.config_file.exists():
            return {}
        try:
            data = json.loads(self.config_file.read_text())
        except json.JSONDecodeError:
            log.error("Configuration file `%s` is not valid JSON", self.config_file)
            # Never overwrite a file the user needs to fix
            self._readable = False
            return {}
        return data if isinstance(data, dict) else {}

    def _read_file(self) -> dict[str, Any]:
        return {
            name: self._settings[name].parse(value)
            if name in self._settings
            else value
            for name, value in self._read_json().items()
        }

    def _read_env(self) -> dict[str, Any]:
        prefix = f"{__app_name__.upper()}_"
        values = {}
        for name, setting in self._settings.items():
            if (raw := os.environ.get(f"{prefix}{name.upper()}")) is not None:
                values[name] = setting.parse(_literal(raw))
        return values

    def _write_setting(self, setting: Setting) -> None:
        """Store a setting's current value in the configuration file."""
        data = self._read_json()
        if not self._readable:
            return
        data[setting.name] = self._values[setting.name]
        log.debug("Saving setting `%s`", setting.name)
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(data, indent=2, cls=PathJSONEncoder))

    def __getattr__(self, name: str) -> Any:
        """Access setting values as attributes."""
        values = self.__dict__.get("_values", {})
        if name in values:
            return values[name]
        raise AttributeError(f"{type(self).__name__!r} has no setting {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        """Change a setting's value, or set an ordinary attribute."""
        if name in self._settings:
            self._values[name] = value
            getattr(self.events, name).fire()
        else:
            super().__setattr__(name, value)

    @classmethod
    def add_setting(cls, name: str, *args: Any, **kwargs: Any) -> None:
        """Register a new setting."""
        cls._settings[name] = Setting(name, *args, **kwargs)


add_setting = Config.add_setting

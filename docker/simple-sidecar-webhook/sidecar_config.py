import copy
import logging
from types import MappingProxyType

import yaml

logger = logging.getLogger(__name__)

# Canonical profile field names, keyed by their lower-cased spelling
PROFILE_FIELDS = {
    "initcontainers": "initContainers",
    "containers": "containers",
    "volumes": "volumes",
    "envvars": "envVars",
    "volumemounts": "volumeMounts",
}


class ConfigError(Exception):
    """Raised when the sidecar configuration file cannot be loaded."""


class InjectionProfile(object):
    """A named bundle of objects merged into a pod at admission time.

    ``init_containers``, ``containers`` and ``volumes`` are inserted into the pod
    spec. ``env_vars`` and ``volume_mounts`` are added to every container that
    already exists in the pod. All of them default to empty.
    """

    __slots__ = ("init_containers", "containers", "volumes", "env_vars", "volume_mounts")

    def __init__(self, init_containers=(), containers=(), volumes=(), env_vars=(), volume_mounts=()):
        object.__setattr__(self, "init_containers", _freeze(init_containers))
        object.__setattr__(self, "containers", _freeze(containers))
        object.__setattr__(self, "volumes", _freeze(volumes))
        object.__setattr__(self, "env_vars", _freeze(env_vars))
        object.__setattr__(self, "volume_mounts", _freeze(volume_mounts))

    def __setattr__(self, name, value):
        raise AttributeError("InjectionProfile is immutable")

    def is_empty(self):
        return not any(getattr(self, field) for field in self.__slots__)

    def to_dict(self):
        return {
            "initContainers": [copy.deepcopy(c) for c in self.init_containers],
            "containers": [copy.deepcopy(c) for c in self.containers],
            "volumes": [copy.deepcopy(v) for v in self.volumes],
            "envVars": [copy.deepcopy(e) for e in self.env_vars],
            "volumeMounts": [copy.deepcopy(m) for m in self.volume_mounts],
        }

    def __eq__(self, other):
        if not isinstance(other, InjectionProfile):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"InjectionProfile(init_containers={len(self.init_containers)}, "
                f"containers={len(self.containers)}, volumes={len(self.volumes)}, "
                f"env_vars={len(self.env_vars)}, volume_mounts={len(self.volume_mounts)})")


def _freeze(items):
    return tuple(copy.deepcopy(item) for item in items)


class ProfileRegistry(object):
    """Read-only mapping of profile name to InjectionProfile.

    Built once at startup and shared by all request handlers; lookups are
    exact, case-sensitive matches.
    """

    def __init__(self, profiles=None):
        self._profiles = MappingProxyType(dict(profiles or {}))

    def lookup(self, key):
        return self._profiles.get(key)

    def names(self):
        return sorted(self._profiles)

    def items(self):
        return self._profiles.items()

    def __contains__(self, key):
        return key in self._profiles

    def __len__(self):
        return len(self._profiles)

    def __iter__(self):
        return iter(self._profiles)


def parse_profile(name, data):
    """Build an InjectionProfile from the decoded YAML of a single profile."""
    if data is None:
        return InjectionProfile()
    if not isinstance(data, dict):
        raise ConfigError(f"profile '{name}' must be a mapping, got {type(data).__name__}")

    fields = {}
    for key, value in data.items():
        canonical = PROFILE_FIELDS.get(str(key).lower())
        if canonical is None:
            logger.warning(f"Ignoring unknown field '{key}' in profile '{name}'")
            continue
        if canonical in fields:
            raise ConfigError(f"profile '{name}' sets field '{canonical}' more than once")
        if value is None:
            value = []
        if not isinstance(value, list):
            raise ConfigError(f"profile '{name}' field '{key}' must be a list")
        for index, item in enumerate(value):
            if not isinstance(item, dict):
                raise ConfigError(f"profile '{name}' field '{key}' item {index} must be a mapping")
        fields[canonical] = value

    return InjectionProfile(
        init_containers=fields.get("initContainers", ()),
        containers=fields.get("containers", ()),
        volumes=fields.get("volumes", ()),
        env_vars=fields.get("envVars", ()),
        volume_mounts=fields.get("volumeMounts", ()),
    )


def parse_config(text):
    """Parse the YAML text of a sidecar configuration into a ProfileRegistry."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}") from e

    if data is None:
        return ProfileRegistry()
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping of profile name to profile")

    profiles = {}
    for name, body in data.items():
        profiles[str(name)] = parse_profile(name, body)
    return ProfileRegistry(profiles)


def load_config(config_file):
    logger.debug(f"Loading sidecar configuration from {config_file}")
    try:
        with open(config_file, "r") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read {config_file}: {e}") from e

    registry = parse_config(text)
    logger.info(f"Loaded {len(registry)} sidecar profile(s) from {config_file}: {registry.names()}")
    return registry


def dump_config(registry):
    data = {name: profile.to_dict() for name, profile in registry.items()}
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)

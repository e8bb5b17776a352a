"""
Configuration management for hwtune.

Supports:
- TOML config files
- Command-line overrides
- Sensible defaults

Priority (highest to lowest):
1. Command-line arguments
2. Config file
3. Defaults
"""

from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

try:
    import tomllib  # Python 3.11+
except ImportError:
    try:
        import tomli as tomllib  # Fallback for older Python
    except ImportError:
        tomllib = None

from .protocol.errors import ValidationError
from .tuning.profiles import Profile


def config_search_paths() -> List[Path]:
    """Default config file locations (searched in order)."""
    return [
        Path.cwd() / "hwtune.toml",
        Path.home() / ".config" / "hwtune" / "config.toml",
        Path("/etc/hwtune/config.toml"),
    ]


@dataclass
class PathsConfig:
    """Where hwtune reads and writes; all joined to `root`."""
    root: str = "/"
    backup_root: str = "/var/backups"
    state_dir: str = "/var/lib/hwtune"
    lock_dir: str = "/run/lock"


@dataclass
class ProbeConfig:
    """Detection timeouts."""
    command_timeout: float = 2.0
    metadata_timeout: float = 1.0
    metadata: bool = True


@dataclass
class DefaultsConfig:
    profile: str = "auto"
    congestion: str = ""


@dataclass
class OutputConfig:
    """Output configuration."""
    verbose: bool = False
    quiet: bool = False


@dataclass
class Config:
    """Main configuration container."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # Source tracking
    _config_file: Optional[Path] = None

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """
        Load configuration from file.

        Args:
            config_path: Explicit path to config file. If None, searches default locations.

        Returns:
            Config instance with loaded values

        Raises:
            ValidationError: explicit file missing or not valid TOML
        """
        config = cls()

        if config_path:
            path = Path(config_path)
            if not path.exists():
                raise ValidationError(f"Config file not found: {config_path}")
        else:
            path = cls._find_config_file()

        if path:
            config = cls._load_from_file(path)
            config._config_file = path

        return config

    @classmethod
    def _find_config_file(cls) -> Optional[Path]:
        """Find config file in default locations."""
        for path in config_search_paths():
            if path.exists():
                return path
        return None

    @classmethod
    def _load_from_file(cls, path: Path) -> "Config":
        """Load config from TOML file."""
        if tomllib is None:
            raise ImportError(
                "TOML support requires Python 3.11+ or 'tomli' package. "
                "Install with: pip install tomli"
            )

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValidationError(f"Invalid config file {path}: {e}")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        if "paths" in data:
            paths = data["paths"]
            config.paths = PathsConfig(
                root=paths.get("root", config.paths.root),
                backup_root=paths.get("backup_root", config.paths.backup_root),
                state_dir=paths.get("state_dir", config.paths.state_dir),
                lock_dir=paths.get("lock_dir", config.paths.lock_dir),
            )

        if "probe" in data:
            probe = data["probe"]
            config.probe = ProbeConfig(
                command_timeout=probe.get("command_timeout", config.probe.command_timeout),
                metadata_timeout=probe.get("metadata_timeout", config.probe.metadata_timeout),
                metadata=probe.get("metadata", config.probe.metadata),
            )

        if "defaults" in data:
            defaults = data["defaults"]
            config.defaults = DefaultsConfig(
                profile=defaults.get("profile", config.defaults.profile),
                congestion=defaults.get("congestion", config.defaults.congestion),
            )

        if "output" in data:
            out = data["output"]
            config.output = OutputConfig(
                verbose=out.get("verbose", config.output.verbose),
                quiet=out.get("quiet", config.output.quiet),
            )

        return config

    def override_from_args(self, args) -> "Config":
        """
        Override config values from argparse namespace.

        Args with value None are ignored (keeping config file values).
        """
        if getattr(args, "root", None):
            self.paths.root = args.root
        if getattr(args, "backup_root", None):
            self.paths.backup_root = args.backup_root
        if getattr(args, "state_dir", None):
            self.paths.state_dir = args.state_dir

        if getattr(args, "profile", None):
            self.defaults.profile = args.profile
        if getattr(args, "congestion", None):
            self.defaults.congestion = args.congestion
        if getattr(args, "no_metadata", None):
            self.probe.metadata = False

        if getattr(args, "verbose", None):
            self.output.verbose = True
        if getattr(args, "quiet", None):
            self.output.quiet = True

        return self

    def validate(self) -> list:
        """
        Validate configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if self.defaults.profile not in Profile.choices():
            errors.append(
                f"Invalid profile: {self.defaults.profile} "
                f"(must be: {'|'.join(Profile.choices())})"
            )

        for name in ("root", "backup_root", "state_dir", "lock_dir"):
            value = getattr(self.paths, name)
            if not str(value).startswith("/"):
                errors.append(f"paths.{name} must be an absolute path: {value}")
        if not Path(self.paths.root).is_dir():
            errors.append(f"paths.root is not a directory: {self.paths.root}")

        if not 0 < self.probe.command_timeout <= 30:
            errors.append("probe.command_timeout must be in (0, 30] seconds")
        if not 0 < self.probe.metadata_timeout <= 5:
            errors.append("probe.metadata_timeout must be in (0, 5] seconds")

        if self.output.verbose and self.output.quiet:
            errors.append("--verbose and --quiet are mutually exclusive")

        return errors

    def summary(self, include_config_path: bool = True) -> str:
        """Generate human-readable config summary."""
        lines = []

        if include_config_path:
            if self._config_file:
                lines.append(f"Config: {self._config_file}")
            else:
                lines.append("Config: (defaults)")

        lines.append(f"Root: {self.paths.root}")
        lines.append(f"Backups: {self.paths.backup_root}  State: {self.paths.state_dir}")
        lines.append(f"Probe timeouts: command {self.probe.command_timeout}s, "
                     f"metadata {self.probe.metadata_timeout}s"
                     f"{'' if self.probe.metadata else ' (metadata disabled)'}")
        lines.append(f"Default profile: {self.defaults.profile}")

        return "\n".join(lines)

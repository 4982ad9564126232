from dataclasses import dataclass, field
from typing import Optional
import yaml
from pathlib import Path

from core.hashing import DEFAULT_PROFILE, HashingProfile, get_profile


@dataclass
class HashingConfig:
    """Configuration for image fingerprinting"""
    # Name of a registered profile; changing it starts a new hash space
    profile: str = DEFAULT_PROFILE.name

    def resolve_profile(self) -> HashingProfile:
        return get_profile(self.profile)


@dataclass
class DuplicateDetectionConfig:
    """Configuration for duplicate detection"""
    max_hamming_distance: int = 5
    nearest_limit: int = 1
    check_timeout: Optional[float] = None  # Seconds, None = no limit
    record_detections: bool = True


@dataclass
class SystemConfig:
    """System-wide configuration"""
    n_workers: int = 4
    database_path: str = "data/image_hashes.db"
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Hashing
    hashing: HashingConfig = field(default_factory=HashingConfig)

    # Duplicate detection
    duplicate_detection: DuplicateDetectionConfig = field(
        default_factory=DuplicateDetectionConfig
    )

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        config_dict = {
            'n_workers': self.n_workers,
            'database_path': self.database_path,
            'log_level': self.log_level,
            'log_dir': self.log_dir,
            'hashing': {
                'profile': self.hashing.profile
            },
            'duplicate_detection': {
                'max_hamming_distance': self.duplicate_detection.max_hamming_distance,
                'nearest_limit': self.duplicate_detection.nearest_limit,
                'check_timeout': self.duplicate_detection.check_timeout,
                'record_detections': self.duplicate_detection.record_detections
            }
        }

        with open(path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        # Load system settings
        config.n_workers = config_dict.get('n_workers', config.n_workers)
        config.database_path = config_dict.get('database_path', config.database_path)
        config.log_level = config_dict.get('log_level', config.log_level)
        config.log_dir = config_dict.get('log_dir', config.log_dir)

        # Load hashing settings
        if 'hashing' in config_dict:
            hs = config_dict['hashing'] or {}
            config.hashing = HashingConfig(
                profile=hs.get('profile', config.hashing.profile)
            )
            # Fail early on a profile name nothing can hash with
            config.hashing.resolve_profile()

        # Load duplicate detection settings
        if 'duplicate_detection' in config_dict:
            dd = config_dict['duplicate_detection'] or {}
            config.duplicate_detection = DuplicateDetectionConfig(
                max_hamming_distance=dd.get('max_hamming_distance', config.duplicate_detection.max_hamming_distance),
                nearest_limit=dd.get('nearest_limit', config.duplicate_detection.nearest_limit),
                check_timeout=dd.get('check_timeout', config.duplicate_detection.check_timeout),
                record_detections=dd.get('record_detections', config.duplicate_detection.record_detections)
            )

        return config

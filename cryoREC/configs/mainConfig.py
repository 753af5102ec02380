import tempfile
from dataclasses import field, dataclass
from pathlib import Path

from cryoREC.configs.reconstruct_config.reconstruct_config import Reconstruct_config, Helical_config, Ewald_config


@dataclass
class MainConfig:
    cachedir: Path = Path(tempfile.gettempdir()) / "cryoREC_cache"
    reconstruct: Reconstruct_config = field(default_factory=Reconstruct_config)
    helical: Helical_config = field(default_factory=Helical_config)
    ewald: Ewald_config = field(default_factory=Ewald_config)

# Create an instance
main_config = MainConfig()

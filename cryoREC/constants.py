import torch

PROJECT_NAME: str = "cryoREC"

DEFAULT_DTYPE: torch.dtype = torch.float32
DOUBLE_DTYPE: torch.dtype = torch.float64

HALFSET_IDS = (1, 2)

#Name for output files
HALFMAP_FNAME_TEMPLATE: str = "%(basename)s_half%(half)d.mrc"
WEIGHTS_FNAME_TEMPLATE: str = "%(basename)s_half%(half)d_weights.mrc"

#Azimuthal angles are snapped to this resolution (degrees) before Ewald wedge assignment
SECTOR_ANGLE_DECIMALS: int = 6

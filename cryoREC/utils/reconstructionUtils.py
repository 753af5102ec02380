from pathlib import Path
from typing import Tuple, Union

import mrcfile
import numpy as np
import torch

FNAME_TYPE = Union[str, Path]


def write_vol(vol: torch.Tensor, fname: FNAME_TYPE, pixel_size: float, overwrite=True):
    mrcfile.write(str(fname), vol.detach().cpu().numpy().astype(np.float32), overwrite=overwrite,
                  voxel_size=pixel_size)


def get_vol(fname: FNAME_TYPE, device: Union[torch.device, str] = "cpu") -> Tuple[torch.Tensor, float]:
    with mrcfile.open(str(fname), permissive=True) as f:
        data = torch.from_numpy(f.data.copy())
        pixel_size = float(f.voxel_size.x)
    return data.to(device), pixel_size

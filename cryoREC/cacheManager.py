import os
import warnings

import joblib

from cryoREC.configs.mainConfig import main_config


def get_cache(cache_name, cachedir=None, verbose=0):
    """
    On-disk memoization at <cachedir>/<cache_name>.joblib. If cache_name is None or the directory is not usable,
    a no-op joblib.Memory is returned.
    """
    if cachedir is None:
        cachedir = main_config.cachedir
    if cache_name is not None:
        try:
            return joblib.Memory(location=os.path.join(cachedir, cache_name + ".joblib"), verbose=verbose)
        except (FileNotFoundError, IOError, PermissionError) as e:
            warnings.warn(f"The cache dir {cachedir} is not available ({e}), skipping cache. "
                          f"Symmetry groups will be recomputed in each execution")
    return joblib.Memory(location=None, verbose=verbose)

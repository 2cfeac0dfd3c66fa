"""JSON helpers for op graphs and configuration files."""

import json
import os
import tempfile
from pathlib import Path

import numpy as np


class NumpyEncoder(json.JSONEncoder):
    """Encode numpy scalars and arrays as native JSON values.

    Usage::

        json.dumps(data, cls=NumpyEncoder)
    """

    def default(self, obj):
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


def atomic_json_dump(data, filepath, indent=None, sort_keys=False):
    """Write JSON to a temporary file in the target directory, then os.replace() it.

    NaN and infinity are written as the JSON extensions NaN/Infinity, since
    they can be meaningful op parameters.

    Args:
        data: Object to serialize (numpy values allowed).
        filepath: Target path (str or Path); parent directories are created.
        indent: Optional indentation passed to json.dump.
        sort_keys: Whether to sort dict keys.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, cls=NumpyEncoder, indent=indent, sort_keys=sort_keys)
        os.replace(tmp_path, filepath)
    except BaseException:
        # Remove the partial file, including on KeyboardInterrupt
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise

"""
JSON file persistence shared by the file-backed stores.
"""

import json
import os
from pathlib import Path
from typing import Any, Union


def write_json_atomic(path: Union[str, Path], data: Any) -> None:
    """Write ``data`` as JSON to ``path`` through a temp file and rename.

    Readers see either the previous file or the complete new one. On
    failure the temp file is removed and the error propagates.
    """
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise

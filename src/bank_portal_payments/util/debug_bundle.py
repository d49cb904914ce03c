from __future__ import annotations

import json
import time
import zipfile
from pathlib import Path
from typing import Optional, Sequence


def create_debug_bundle(
    *,
    screenshot_dir: str,
    log_file: str,
    out_dir: str = ".data",
    flow: str = "",
    run_log: Optional[Sequence[str]] = None,
    summary: Optional[dict] = None,
) -> Path:
    """
    Zip what is needed to look at a failed portal run offline.

    - `screenshots/`: stage screenshots (only written when debug + screenshots are on)
    - the application log file
    - `run-log.txt`: the run log returned to the caller, when given
    - `summary.json`: per-instruction results, when given

    Never includes `.env`, config files, the batch store or browser profile directories.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    kind = (flow or "").strip().lower()
    out_path = out_root / (f"debug_bundle_{kind}_{stamp}.zip" if kind else f"debug_bundle_{stamp}.zip")

    shots = Path(screenshot_dir)
    log = Path(log_file)

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log.is_file():
            z.write(log, arcname=log.name)

        if shots.is_dir():
            for p in sorted(shots.glob("*.png")):
                try:
                    z.write(p, arcname=f"screenshots/{p.name}")
                except OSError:
                    # removed while zipping
                    continue

        if run_log:
            z.writestr("run-log.txt", "\n".join(run_log) + "\n")
        if summary is not None:
            z.writestr("summary.json", json.dumps(summary, indent=2, default=str))

    return out_path

"""
Contract artifacts (ABI + creation bytecode).

Looks in ARTIFACTS_DIR for, in order:
  <dir>/<Name>.json                          cached {"Name": {abi, bytecode}} or {abi, bytecode}
  <dir>/contracts/**/<Name>.sol/<Name>.json  Hardhat artifact layout
Without an artifacts directory the dev chain's artifact is used, which only
deploys on the dev chain.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("opfactory.artifacts")


class ArtifactError(Exception):
    pass


@dataclass(frozen=True)
class Artifact:
    name: str
    abi: list
    bytecode: str
    source: str = "devchain"


def load_artifact(name: str, artifacts_dir: Optional[Path] = None) -> Artifact:
    if artifacts_dir is None:
        return dev_artifact(name)

    artifacts_dir = Path(artifacts_dir)
    candidates = [artifacts_dir / f"{name}.json"]
    candidates += sorted(artifacts_dir.glob(f"**/{name}.sol/{name}.json"))

    for path in candidates:
        if not path.exists():
            continue
        with open(path) as f:
            data = json.load(f)
        # Support both cached format (nested by contract name) and flat Hardhat format
        if name in data:
            data = data[name]
        if "abi" in data and "bytecode" in data:
            bytecode = data["bytecode"]
            if isinstance(bytecode, dict):  # solc standard-json style {"object": ...}
                bytecode = bytecode.get("object", "")
            if not bytecode.startswith("0x"):
                bytecode = "0x" + bytecode
            logger.info(f"Using compiled artifact for {name} from {path}")
            return Artifact(name=name, abi=data["abi"], bytecode=bytecode, source=str(path))
        logger.warning(f"Unexpected artifact format in {path}, skipping")

    raise ArtifactError(f"No artifact for {name} under {artifacts_dir}")


def dev_artifact(name: str) -> Artifact:
    from devchain.models import MODELS

    cls = MODELS.get(name)
    if cls is None:
        raise ArtifactError(f"Unknown contract {name}; dev artifacts: {sorted(MODELS)}")
    return Artifact(name=name, abi=cls.ABI, bytecode="0x" + cls.bytecode().hex())

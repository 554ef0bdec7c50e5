"""
Deploy an Operation template + OperationFactory and wire them up.

Steps (owner = OWNER_PRIVATE_KEY):
  1. deploy Operation template (nonce n) and OperationFactory (nonce n+1)
  2. template.initialize(operator, placeholder terraAddress, owner, owner)
  3. transferOperator(OPERATOR address)
  4. setStandardOperation(--standard, template)
  5. pushTerraAddresses(--terra ...)   (optional)

Usage:
    python scripts/deploy_factory.py --artifacts-dir artifacts/
    python scripts/deploy_factory.py --terra 0xbeef... --terra 0xdead...
    python scripts/deploy_factory.py --dry-run        # Predict addresses, send nothing
    python scripts/deploy_factory.py --verify         # Check saved addresses have code

Prerequisites:
    pip install -e .
    OWNER_PRIVATE_KEY, OPERATOR_PRIVATE_KEY (or an unlocked dev node), RPC_URL

After deployment:
    FACTORY_ADDRESS and OPERATION_ADDRESS are written to .env and
    data/factory_config.json.
"""

import re
import sys
import json
import time
import logging
import argparse
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from web3 import Web3  # noqa: E402

from core.artifacts import ArtifactError  # noqa: E402
from core.chain import DeploymentError, connect  # noqa: E402
from core.config import Settings, configure_logging  # noqa: E402
from core.factory import OperationFactory  # noqa: E402
from core.operation import Operation  # noqa: E402
from core.signer import get_signers  # noqa: E402
from core.utils import predict_create_address, to_bytes32  # noqa: E402

logger = logging.getLogger("opfactory.deploy_factory")

# Template's own terra address: a placeholder, the template is never used directly
TEMPLATE_TERRA_ADDRESS = "0x" + "00" * 31 + "01"


# ============================================================
# DEPLOY
# ============================================================

def deploy(settings: Settings, args: argparse.Namespace) -> tuple[dict[str, str], int]:
    w3 = connect(settings.rpc_url)
    if settings.chain_id is not None and w3.eth.chain_id != settings.chain_id:
        logger.error(f"RPC chain id {w3.eth.chain_id} != CHAIN_ID {settings.chain_id}")
        sys.exit(1)

    signers = get_signers(w3, settings.private_keys() if len(settings.private_keys()) == 2 else None)
    if len(signers) < 2:
        logger.error("Need OWNER_PRIVATE_KEY and OPERATOR_PRIVATE_KEY (or a node with 2 unlocked accounts)")
        sys.exit(1)
    owner, operator = signers[:2]

    terra_addresses = [Web3.to_hex(to_bytes32(t)) for t in args.terra]
    nonce = w3.eth.get_transaction_count(owner.address)

    logger.info(f"\n{'='*60}")
    logger.info("OPERATION FACTORY DEPLOYMENT")
    logger.info(f"  Chain id:  {w3.eth.chain_id}")
    logger.info(f"  Owner:     {owner.address}")
    logger.info(f"  Operator:  {operator.address}")
    logger.info(f"  Template:  {predict_create_address(owner.address, nonce)} (predicted)")
    logger.info(f"  Factory:   {predict_create_address(owner.address, nonce + 1)} (predicted)")
    logger.info(f"  Standard:  {args.standard}")
    logger.info(f"  Queue:     {len(terra_addresses)} terra address(es)")

    if args.dry_run:
        logger.info("  STATUS:    DRY RUN — no transaction sent")
        return {}, w3.eth.chain_id

    artifacts_dir = Path(args.artifacts_dir) if args.artifacts_dir else settings.artifacts_dir
    opts = {"artifacts_dir": artifacts_dir, "gas_buffer": settings.gas_buffer, "timeout": settings.tx_timeout}

    try:
        operation = Operation.deploy(w3, owner, **opts)
        factory = OperationFactory.deploy(w3, owner, **opts)
    except (DeploymentError, ArtifactError) as e:
        logger.error(f"DEPLOYMENT FAILED: {e}")
        sys.exit(1)

    steps = [
        ("initialize template", lambda: operation.initialize(
            operator.address, TEMPLATE_TERRA_ADDRESS, owner.address, owner.address)),
        ("transferOperator", lambda: factory.transfer_operator(operator.address)),
        ("setStandardOperation", lambda: factory.set_standard_operation(args.standard, operation.address)),
    ]
    if terra_addresses:
        steps.append(("pushTerraAddresses", lambda: factory.push_terra_addresses(terra_addresses)))

    for name, step in steps:
        result = step()
        if not result.success:
            logger.error(f"  {name} FAILED: {result.error}")
            sys.exit(1)
        logger.info(f"  {name} ✓")

    logger.info(f"  STATUS:    DEPLOYED — factory {factory.address}")
    return {"factory": factory.address, "operation": operation.address}, w3.eth.chain_id


def verify(settings: Settings) -> bool:
    w3 = connect(settings.rpc_url)
    ok = True
    for label, address in (("Operation", settings.operation_address), ("Factory", settings.factory_address)):
        if not address:
            logger.warning(f"  {label}: no address configured")
            ok = False
            continue
        code = w3.eth.get_code(Web3.to_checksum_address(address))
        status = "DEPLOYED ✓" if len(code) > 0 else "NOT DEPLOYED"
        logger.info(f"  {label}: {address} [{status}]")
        ok = ok and len(code) > 0

    if ok:
        factory = OperationFactory.at(w3, settings.factory_address)
        logger.info(f"  owner={factory.owner()} operator={factory.operator()}")
        logger.info(f"  standards(0)={factory.standards(0)} queue={factory.remaining_terra_addresses()}")
    return ok


# ============================================================
# SAVE ADDRESSES TO .ENV + DATA FILE
# ============================================================

def save_factory_config(addresses: dict[str, str], chain_id: int, root: Path = ROOT) -> None:
    """
    Write FACTORY_ADDRESS and OPERATION_ADDRESS to .env.
    Also saves data/factory_config.json.
    """
    env_path = root / ".env"
    env_content = env_path.read_text(encoding="utf-8") if env_path.exists() else ""

    for key, addr in (("FACTORY_ADDRESS", addresses["factory"]), ("OPERATION_ADDRESS", addresses["operation"])):
        line = f"{key}={addr}"
        if re.search(rf"^{key}=", env_content, flags=re.MULTILINE):
            env_content = re.sub(rf"^{key}=.*$", line, env_content, flags=re.MULTILINE)
        else:
            env_content += f"\n{line}\n"

    env_path.write_text(env_content, encoding="utf-8")

    config_path = root / "data" / "factory_config.json"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config = {
        "addresses": addresses,
        "chain_id": chain_id,
        "deployed_at": time.time(),
    }
    with open(config_path, "w") as f:
        json.dump(config, f, indent=2)

    logger.info("Addresses saved to .env and data/factory_config.json")


# ============================================================
# CLI
# ============================================================

def main(argv=None):
    parser = argparse.ArgumentParser(description="Deploy Operation template + OperationFactory")
    parser.add_argument("--standard", type=int, default=0, help="Standard code for the template (default: 0)")
    parser.add_argument("--terra", action="append", default=[], help="Terra address to queue (repeatable)")
    parser.add_argument("--artifacts-dir", default=None, help="Compiled artifacts directory")
    parser.add_argument("--dry-run", action="store_true", help="Show predicted addresses without deploying")
    parser.add_argument("--verify", action="store_true", help="Check saved addresses (no deployment)")
    args = parser.parse_args(argv)

    settings = Settings.from_env(ROOT / ".env")
    configure_logging(settings.log_level)

    if args.verify:
        sys.exit(0 if verify(settings) else 1)

    addresses, chain_id = deploy(settings, args)
    if addresses:
        save_factory_config(addresses, chain_id)


if __name__ == "__main__":
    main()

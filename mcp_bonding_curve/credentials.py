"""
Series Credentials

Each curve owns a signing capability derived deterministically from its own identity, so the
engine (not the operator's personal key) authorizes every edition it issues. The curve address
is a program derived address over ``[b"bonding_curve", collection]``; its bump is the stored
derivation nonce. The signer keypair is derived from the engine seed, the curve address and
the bump, which lets the registry rebuild the same credential whenever a curve is loaded.

The credential lives inside the curve registry and is only handed to the issuance
collaborator within the atomic mint step.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Optional, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mcp_bonding_curve import config

CURVE_SEED = b"bonding_curve"
LOOKUP_SEED = b"bezier_lookup"


@dataclass(frozen=True)
class SeriesCredential:
    collection_id: str
    address: Pubkey
    bump: int
    signer: Keypair = field(repr=False, compare=False)

    @property
    def mint_authority(self) -> Pubkey:
        """Public key that must hold mint authority over the collection."""
        return self.signer.pubkey()


def derive_curve_address(collection_id: str, program_id: Optional[Pubkey] = None) -> Tuple[Pubkey, int]:
    """Returns the curve's program derived address and its bump."""
    collection = Pubkey.from_string(collection_id)
    return Pubkey.find_program_address([CURVE_SEED, bytes(collection)], program_id or config.PROGRAM_ID)


def derive_lookup_address(curve_address: Pubkey, program_id: Optional[Pubkey] = None) -> Pubkey:
    """Returns the address of the lookup table owned by a curve."""
    address, _ = Pubkey.find_program_address([LOOKUP_SEED, bytes(curve_address)], program_id or config.PROGRAM_ID)
    return address


def derive_series_credential(
    collection_id: str,
    engine_seed: Optional[bytes] = None,
    program_id: Optional[Pubkey] = None,
) -> SeriesCredential:
    """
    Derives the signing credential of the curve that prices ``collection_id``.

    The same inputs always produce the same credential.
    """
    address, bump = derive_curve_address(collection_id, program_id)
    seed_material = (engine_seed or config.ENGINE_SEED) + CURVE_SEED + bytes(address) + bytes([bump])
    signer = Keypair.from_seed(hashlib.sha256(seed_material).digest())
    return SeriesCredential(collection_id=collection_id, address=address, bump=bump, signer=signer)

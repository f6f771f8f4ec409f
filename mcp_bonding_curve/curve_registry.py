import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from mcp_bonding_curve import config
from mcp_bonding_curve.credentials import SeriesCredential, derive_series_credential
from mcp_bonding_curve.errors import (
    CurveAlreadyExistsError,
    CurveNotFoundError,
    InvalidCurveParametersError,
)
from mcp_bonding_curve.schemas import CreateCurveRequest, CurveConfig, CurveRecord, LookupTable
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

# Determine the absolute path to the directory containing this file
MODULE_DIR = Path(__file__).parent.resolve()


class CurveEntry:
    """Registry slot for one collection: its current snapshot, table, credential and lock."""

    def __init__(self, curve: CurveConfig, credential: SeriesCredential, lookup_table: Optional[LookupTable] = None):
        self.curve = curve
        self.lookup_table = lookup_table
        self.credential = credential
        self.lock = asyncio.Lock()
        self.closed = False


class CurveRegistry:
    """
    In-memory store of curve configurations with optional JSON persistence.

    Each curve is a unit of exclusive mutation: every mint, governance change or table
    creation runs inside ``exclusive()``, which holds that curve's lock. Operations on
    different curves never share a lock.
    """

    def __init__(self, state_dir: Optional[Union[str, Path]] = None):
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self._entries: Dict[str, CurveEntry] = {}

    def __contains__(self, collection_id: str) -> bool:
        return collection_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # --- Creation ---

    def create_curve(self, request: Union[CreateCurveRequest, dict]) -> CurveConfig:
        """
        Creates a curve with zero supply and volume.

        Raises:
            InvalidCurveParametersError: If the parameters fail validation.
            CurveAlreadyExistsError: If the collection already has a curve.
        """
        try:
            if not isinstance(request, CreateCurveRequest):
                request = CreateCurveRequest.model_validate(request)
        except ValidationError as e:
            raise InvalidCurveParametersError(f"Invalid curve parameters: {e}") from e

        if request.collection_id in self._entries:
            raise CurveAlreadyExistsError(f"A curve already exists for collection {request.collection_id}")

        credential = derive_series_credential(request.collection_id)
        curve = CurveConfig(
            authority=request.authority,
            collection_id=request.collection_id,
            curve_kind=request.curve_kind,
            base_price=request.base_price,
            price_increment=request.price_increment,
            max_supply=request.max_supply,
            current_supply=0,
            total_volume=0,
            price_floor=request.price_floor,
            price_ceiling=request.price_ceiling,
            bump=credential.bump,
        )
        entry = CurveEntry(curve, credential)
        self._entries[curve.collection_id] = entry
        self.persist(entry)

        logger.info(
            f"Created {curve.curve_kind.value} curve for {curve.collection_id}: base={curve.base_price}, "
            f"increment={curve.price_increment}, max_supply={curve.max_supply}, curve_address={credential.address}"
        )
        return curve

    # --- Reads ---

    def _entry(self, collection_id: str) -> CurveEntry:
        entry = self._entries.get(collection_id)
        if entry is None:
            raise CurveNotFoundError(f"No curve registered for collection {collection_id}")
        return entry

    def get_curve(self, collection_id: str) -> Optional[CurveConfig]:
        """Retrieves the current snapshot of a curve."""
        entry = self._entries.get(collection_id)
        return entry.curve if entry else None

    def get_lookup_table(self, collection_id: str) -> Optional[LookupTable]:
        entry = self._entries.get(collection_id)
        return entry.lookup_table if entry else None

    def snapshot(self, collection_id: str) -> Tuple[CurveConfig, Optional[LookupTable]]:
        """Returns the curve and its lookup table as one consistent pair."""
        entry = self._entry(collection_id)
        return entry.curve, entry.lookup_table

    # --- Exclusive Mutation ---

    @asynccontextmanager
    async def exclusive(self, collection_id: str) -> AsyncIterator[CurveEntry]:
        """Holds the curve's lock for the duration of the block."""
        entry = self._entry(collection_id)
        async with entry.lock:
            # The curve may have been closed while this caller waited for the lock
            if entry.closed:
                raise CurveNotFoundError(f"Curve for collection {collection_id} was closed")
            yield entry

    def remove(self, entry: CurveEntry) -> None:
        """Drops a curve and its lookup table from memory and storage. Caller holds the lock."""
        entry.closed = True
        self._entries.pop(entry.curve.collection_id, None)

        path = self._record_path(entry.curve.collection_id)
        if path is not None and path.exists():
            try:
                path.unlink()
                logger.info(f"Removed curve record {path}")
            except OSError as e:
                logger.error(f"Error removing curve record {path}: {e}")

    # --- Persistence ---

    def _record_path(self, collection_id: str) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / f"{collection_id}.json"

    def persist(self, entry: CurveEntry) -> bool:
        """Saves a snapshot of the curve record. Returns False if the write failed."""
        path = self._record_path(entry.curve.collection_id)
        if path is None:
            return True

        record = CurveRecord(curve=entry.curve, lookup_table=entry.lookup_table)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            with open(tmp_path, "w") as f:
                json.dump(record.model_dump(mode="json"), f, indent=4)
            tmp_path.replace(path)
            logger.debug(f"Saved curve record to {path}")
            return True
        except Exception as e:
            logger.error(f"Error saving curve record to {path}: {e}")
            return False

    def load(self) -> int:
        """
        Loads curve records from the state directory, replacing nothing already in memory.

        Returns:
            The number of curves loaded.
        """
        if self.state_dir is None:
            return 0
        if not self.state_dir.is_dir():
            logger.warning(f"Curve state directory not found: {self.state_dir}. No curves loaded.")
            return 0

        logger.info(f"Loading curve records from: {self.state_dir.resolve()}")
        loaded = 0
        for file_path in sorted(self.state_dir.glob("*.json")):
            try:
                with open(file_path, "r") as f:
                    record = CurveRecord.model_validate(json.load(f))

                collection_id = record.curve.collection_id
                if collection_id != file_path.stem:
                    logger.warning(f"Collection mismatch in {file_path}: expected '{file_path.stem}', found '{collection_id}'. Skipping.")
                    continue
                if collection_id in self._entries:
                    logger.warning(f"Duplicate curve '{collection_id}' found in {file_path}. Skipping.")
                    continue

                credential = derive_series_credential(collection_id)
                if credential.bump != record.curve.bump:
                    logger.warning(f"Derivation nonce mismatch for '{collection_id}' in {file_path}. Skipping.")
                    continue
                if record.lookup_table is not None and record.lookup_table.owning_curve != collection_id:
                    logger.warning(f"Lookup table in {file_path} belongs to another curve. Skipping.")
                    continue

                self._entries[collection_id] = CurveEntry(record.curve, credential, record.lookup_table)
                loaded += 1
                logger.info(f"Successfully loaded curve: {collection_id}")

            except json.JSONDecodeError:
                logger.error(f"Error decoding JSON from file: {file_path}")
            except ValidationError as e:
                logger.error(f"Invalid curve record in file {file_path}: {e}")
            except Exception as e:
                logger.error(f"Unexpected error loading curve record from {file_path}: {e}")

        logger.info(f"Finished loading curves. Total loaded: {loaded}")
        return loaded


# --- Initial Load ---
# Load curves when the module is imported
registry = CurveRegistry(MODULE_DIR / config.CURVE_STATE_DIR)
registry.load()

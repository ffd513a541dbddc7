"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Persistence for neural networks.

Two storage forms share one JSON representation of the network:

- single files written by :func:`save_network_file` and read back by
  :func:`load_network_file`;
- a SQLite model store (:class:`ModelDatabase`) keyed by network id, with
  metadata for listing and age-based cleanup.

Only static neuron state is stored: bias, weights, delta weights, learning
rate, momentum and the activation name. Predecessor links are rebuilt from
layer positions on load; the activation itself is not restored unless the
caller asks for it.
"""

import sqlite3
import json
import os
import logging
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, Union
from contextlib import contextmanager
import numpy as np

from .activation import Activation
from .exceptions import PersistenceParseError
from .network import Network

# Configure module logger
logger = logging.getLogger(__name__)


class NetworkEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        """
        Convert numpy values to plain Python types for JSON serialization.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation
        """
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def dumps_network(network: Network) -> str:
    """Serialize a network to its JSON document."""
    return json.dumps(network.to_dict(), cls=NetworkEncoder)


def loads_network(
    document: Union[str, bytes],
    activation: Union[Activation, str, None] = None
) -> Network:
    """
    Rebuild a network from its JSON document.

    Args:
        document: Output of :func:`dumps_network`
        activation: Activation to attach; when omitted the network raises
            NullActivationError until ``set_activation`` is called

    Raises:
        PersistenceParseError: If the document is not a valid network
    """
    try:
        data = json.loads(document)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PersistenceParseError(f"Invalid network JSON: {e}") from e

    network = Network.from_dict(data)
    if activation is not None:
        network.set_activation(activation)
    return network


def save_network_file(network: Network, path: str) -> None:
    """
    Write a network to a JSON file, replacing any existing file.

    Raises:
        OSError: If the file cannot be written
    """
    document = dumps_network(network)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(document)
    logger.info(f"Saved network {network.sizes} to {path}")


def load_network_file(
    path: str,
    activation: Union[Activation, str, None] = None
) -> Network:
    """
    Read a network written by :func:`save_network_file`.

    Raises:
        OSError: If the file cannot be read
        PersistenceParseError: If the file is not a valid network
    """
    with open(path, 'rb') as f:
        document = f.read()
    network = loads_network(document, activation)
    logger.info(f"Loaded network {network.sizes} from {path}")
    return network


class ModelDatabase:
    """
    Manages SQLite database for neural network model persistence.

    The database stores:
    - Network metadata (architecture, training status, final loss, epochs)
    - The network's JSON representation
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    activation TEXT NOT NULL,
                    network_data TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    final_loss REAL,
                    epochs INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_trained
                ON networks(trained)
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_updated_at
                ON networks(updated_at)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'network_id': row['network_id'],
            'architecture': json.loads(row['architecture']),
            'activation': row['activation'],
            'trained': bool(row['trained']),
            'final_loss': row['final_loss'],
            'epochs': row['epochs'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        final_loss: Optional[float] = None,
        epochs: int = 0
    ) -> bool:
        """
        Save a network to the database, replacing any entry with the same id.

        The original ``created_at`` of a replaced entry is kept.

        Args:
            network: Network object to save
            network_id: Unique identifier for the network
            trained: Whether the network has been trained
            final_loss: Mean loss of the last training epoch
            epochs: Number of epochs trained

        Returns:
            bool: True if successful

        Raises:
            ValueError: If final_loss or epochs is negative
        """
        # Validate inputs
        if final_loss is not None and final_loss < 0.0:
            raise ValueError(
                f"final_loss must be non-negative, got {final_loss}"
            )
        if epochs < 0:
            raise ValueError(f"epochs must be non-negative, got {epochs}")

        network_data = dumps_network(network)
        architecture_json = json.dumps(network.sizes, cls=NetworkEncoder)
        activation_name = network.layers[-1][0].activation_name

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, activation, network_data, trained,
                 final_loss, epochs, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    activation = excluded.activation,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    final_loss = excluded.final_loss,
                    epochs = excluded.epochs,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                activation_name,
                network_data,
                1 if trained else 0,
                final_loss,
                epochs
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, final_loss={final_loss}"
        )
        return True

    def load_network_from_db(
        self,
        network_id: str,
        activation: Union[Activation, str, None] = None
    ) -> Optional[Network]:
        """
        Load a network from the database.

        Args:
            network_id: Unique identifier of the network
            activation: Activation to attach after loading

        Returns:
            Network object or None if not found

        Raises:
            PersistenceParseError: If the stored document is malformed
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Network '{network_id}' not found")
                return None

            network = loads_network(row['network_data'], activation)
            logger.info(f"Loaded network '{network_id}'")
            return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """
        List all networks with metadata.

        Returns:
            List of network metadata dictionaries, newest first
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    architecture,
                    activation,
                    trained,
                    final_loss,
                    epochs,
                    created_at,
                    updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')

            networks = []
            for row in cursor.fetchall():
                metadata = self._row_to_metadata(row)
                architecture = metadata['architecture']

                # One weight per predecessor; input neurons hold a single weight
                metadata['weights_shape'] = [[architecture[0], 1]] + [
                    [architecture[i + 1], architecture[i]]
                    for i in range(len(architecture) - 1)
                ]
                networks.append(metadata)

            logger.debug(f"Listed {len(networks)} networks")
            return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Args:
            network_id: Unique identifier of the network

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted network '{network_id}'")
            else:
                logger.warning(
                    f"Could not delete network '{network_id}': not found"
                )
            return deleted

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks not saved for more than ``days`` days.

        Args:
            days: Age threshold in days

        Returns:
            int: Number of networks deleted

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                DELETE FROM networks
                WHERE julianday('now') - julianday(updated_at) > ?
            ''', (days,))
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} network(s) not saved in {days} day(s)")
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get network metadata without loading the full object.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    architecture,
                    activation,
                    trained,
                    final_loss,
                    epochs,
                    created_at,
                    updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(
                    f"Metadata for network '{network_id}' not found"
                )
                return None

            return self._row_to_metadata(row)


# Global database instance
_db = None


def _get_db(model_dir: str = 'models') -> ModelDatabase:
    """
    Get the database for ``model_dir``.

    The default directory shares one global instance; any other directory
    gets a new instance.

    Returns:
        ModelDatabase: The database instance
    """
    global _db
    if model_dir != 'models':
        return ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))
    if _db is None:
        _db = ModelDatabase()
    return _db


def _guarded(
    action: str,
    fallback: Any,
    call: Callable[[ModelDatabase], Any],
    model_dir: str,
    network_id: Optional[str] = None,
    reraise: Tuple[type, ...] = ()
) -> Any:
    """
    Run ``call`` against the store, logging failures instead of raising.

    ``fallback`` is returned when ``network_id`` is given but empty, or when
    the call fails with anything not listed in ``reraise``.
    """
    subject = f" '{network_id}'" if network_id is not None else ""
    if network_id is not None and (not network_id or not isinstance(network_id, str)):
        logger.error(f"Cannot {action}: network_id must be a non-empty string")
        return fallback

    try:
        return call(_get_db(model_dir))
    except reraise:
        raise
    except (PersistenceParseError, json.JSONDecodeError, AttributeError, TypeError) as e:
        logger.error(f"Bad network data ({action}{subject}): {e}")
    except sqlite3.Error as e:
        logger.error(f"Store failure ({action}{subject}): {e}")
    except Exception as e:
        logger.exception(f"Unexpected failure ({action}{subject}): {e}")
    return fallback


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = 'models',
    trained: bool = True,
    final_loss: Optional[float] = None,
    epochs: int = 0
) -> bool:
    """
    Store ``network`` under ``network_id``, replacing any previous entry.

    Returns False when the network could not be stored.

    Raises:
        ValueError: If final_loss or epochs is negative

    Example:
        >>> net = Network([1, 8, 1], 'sigmoid')
        >>> save_network(net, "sine", trained=False)
        True
    """
    return _guarded(
        'save', False,
        lambda db: db.save_network_to_db(network, network_id, trained, final_loss, epochs),
        model_dir, network_id, reraise=(ValueError,)
    )


def load_network(
    network_id: str,
    model_dir: str = 'models',
    activation: Union[Activation, str, None] = None
) -> Optional[Network]:
    """
    Fetch a stored network, or None if it is missing or unreadable.

    Pass ``activation`` to get a network that can be evaluated right away.
    """
    return _guarded(
        'load', None,
        lambda db: db.load_network_from_db(network_id, activation),
        model_dir, network_id
    )


def list_saved_networks(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """Metadata of every stored network, newest first; empty on failure."""
    return _guarded('list', [], lambda db: db.list_networks_from_db(), model_dir)


def delete_network(network_id: str, model_dir: str = 'models') -> bool:
    return _guarded(
        'delete', False,
        lambda db: db.delete_network_from_db(network_id),
        model_dir, network_id
    )


def delete_old_networks(days: float = 2, model_dir: str = 'models') -> int:
    """
    Delete stored networks last updated more than ``days`` days ago.

    Returns:
        int: Number of networks deleted, or -1 if the store failed

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")
    return _guarded(
        'delete old networks', -1,
        lambda db: db.delete_old_networks_from_db(days),
        model_dir
    )


def get_network_metadata(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """
    Metadata of one stored network without decoding its weights.

    Example:
        >>> metadata = get_network_metadata("sine")
        >>> if metadata:
        ...     print(f"Final loss: {metadata['final_loss']}")
    """
    return _guarded(
        'read metadata', None,
        lambda db: db.get_network_metadata_from_db(network_id),
        model_dir, network_id
    )

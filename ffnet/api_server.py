"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for neural network training.

Endpoints cover:
- Creating and managing neural networks
- Training networks on posted datasets with real-time progress updates
- Computing network outputs
- Persisting networks to/from the SQLite model store

Stack:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- Matplotlib for loss curve images

Run with ``python -m ffnet.api_server``. When serving through another
entry point (e.g. gunicorn), call :func:`bootstrap` once at startup.
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from ffnet.activation import available_activations
from ffnet.dataset import samples_from_records
from ffnet.exceptions import (
    NetworkError,
    InputSizeMismatchError,
    NullActivationError,
    DatasetError
)
from ffnet.network import Network
from ffnet.trainer import Trainer
from ffnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks,
    get_network_metadata
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Configure root logging from LOG_LEVEL and FLASK_ENV.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    # Set up basic logging format
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('ffnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

MODEL_DIR = os.getenv('FFNET_MODEL_DIR', 'models')
DEFAULT_LAYER_SIZES = [1, 8, 1]
DEFAULT_MAX_EPOCHS = 100

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

ACTIVE_JOB_STATUSES = ('pending', 'training')


def _network_info(net: Network, trained: bool = False, final_loss: Optional[float] = None,
                  epochs: int = 0, saved: bool = False) -> Dict[str, Any]:
    return {
        'saved': saved,
        'network': net,
        'architecture': net.sizes,
        'activation': net.output_layer[0].activation_name,
        'trained': trained,
        'final_loss': final_loss,
        'epochs': epochs,
        'loss_history': []
    }


def get_active_network(network_id: str) -> Optional[Dict[str, Any]]:
    """
    Return the in-memory entry for a network, loading it from the store
    if it is only saved there.

    Stored networks come back without an activation attached; the stored
    activation name is resolved to reattach it.
    """
    if network_id in active_networks:
        return active_networks[network_id]

    net = load_network(network_id, model_dir=MODEL_DIR)
    if net is None:
        return None
    try:
        net.restore_activation()
    except ValueError as e:
        logger.error(f"Cannot restore activation of network {network_id}: {e}")
        return None

    metadata = get_network_metadata(network_id, MODEL_DIR) or {}
    active_networks[network_id] = _network_info(
        net,
        trained=metadata.get('trained', False),
        final_loss=metadata.get('final_loss'),
        epochs=metadata.get('epochs', 0),
        saved=True
    )
    logger.info(f"Loaded network {network_id} from the model store")
    return active_networks[network_id]


def reload_saved_networks() -> None:
    """
    Load every stored network into the in-memory registry.

    Keeps active_networks in sync with the database after a restart.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("Store is empty, nothing to load")
        return

    loaded_count = 0
    for net_info in saved_networks:
        if get_active_network(net_info['network_id']) is not None:
            loaded_count += 1
        else:
            logger.warning(f"Failed to load network {net_info['network_id']}")

    logger.info(f"Loaded {loaded_count} stored network(s) into memory")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete networks older than 2 days from the database
    - Remove in-memory networks that were deleted from the database
    - Remove completed/failed training jobs from memory
    """
    while True:
        try:
            logger.info("Scheduled cleanup of stale networks")
            deleted_count = delete_old_networks(days=2, model_dir=MODEL_DIR)

            if deleted_count > 0:
                logger.info(f"Scheduled cleanup removed {deleted_count} network(s)")
                sync_active_networks()
            elif deleted_count == 0:
                logger.info("Scheduled cleanup found nothing to remove")
            else:
                logger.error("Scheduled cleanup could not reach the store")

            cleanup_finished_training_jobs()

            logger.info("Next cleanup in 24h")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Scheduled cleanup failed: {e}")
            # Wait a bit before retrying on error (don't spam)
            gevent.sleep(3600)  # 1 hour


def sync_active_networks() -> None:
    """Drop saved networks from memory once they are gone from the database."""
    saved_ids = {net['network_id'] for net in list_saved_networks(MODEL_DIR)}
    training_ids = {
        job['network_id'] for job in training_jobs.values()
        if job.get('status') in ACTIVE_JOB_STATUSES
    }
    networks_to_remove = [
        nid for nid, info in active_networks.items()
        if info.get('saved') and nid not in saved_ids and nid not in training_ids
    ]
    for nid in networks_to_remove:
        del active_networks[nid]
        logger.info(f"Evicted {nid}: no longer in the store")


def cleanup_finished_training_jobs() -> None:
    """
    Remove completed, stopped or failed training jobs from memory.

    Keeps training_jobs bounded on a long-running server.
    """
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') not in ACTIVE_JOB_STATUSES
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Dropped {len(jobs_to_remove)} finished job record(s)")


def start_cleanup_task() -> None:
    """
    Spawn the periodic cleanup loop.

    Only the first call spawns the loop.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup loop already running")
        return

    _cleanup_task_started = True
    logger.info("Cleanup loop started, interval 24h")
    gevent.spawn(cleanup_old_networks_task)


def bootstrap() -> None:
    """Restore saved networks and start background maintenance."""
    reload_saved_networks()
    training_jobs.clear()
    start_cleanup_task()


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Report liveness, network counts and running jobs.

    A job is running while its status is 'pending' or 'training'.
    """
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in ACTIVE_JOB_STATUSES
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'activations': available_activations()
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (all optional):
        {
            'layer_sizes': [1, 8, 1],
            'activation': 'sigmoid',
            'bias': 1.0,
            'seed': 42
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', DEFAULT_LAYER_SIZES)
    activation = data.get('activation', 'sigmoid')
    bias = data.get('bias', 1.0)
    seed = data.get('seed')

    if not isinstance(bias, (int, float)) or isinstance(bias, bool):
        return jsonify({'error': 'bias must be a number'}), 400
    if seed is not None and (not isinstance(seed, int) or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400
    if not isinstance(layer_sizes, list):
        return jsonify({'error': 'layer_sizes must be a list of integers'}), 400

    try:
        net = Network(layer_sizes, activation, bias=bias, seed=seed)
    except ValueError as e:
        logger.warning(f"Invalid network requested: {e}")
        return jsonify({'error': str(e)}), 400

    network_id = str(uuid.uuid4())
    active_networks[network_id] = _network_info(net)

    logger.info(f"New network {network_id}: {layer_sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'activation': active_networks[network_id]['activation'],
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'activation': info['activation'],
            'trained': info['trained'],
            'final_loss': info['final_loss'],
            'epochs': info['epochs'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    # Get saved networks, excluding duplicates already in memory
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Queue a background training job for a network.

    Request body:
        {
            'dataset': [{'input': [...], 'label': [...]}, ...],
            'max_epochs': 100,        # optional
            'target_loss': 0.001      # optional
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    info = get_active_network(network_id)
    if info is None:
        logger.warning(f"Train: unknown network {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    for job in training_jobs.values():
        if job['network_id'] == network_id and job['status'] in ACTIVE_JOB_STATUSES:
            return jsonify({'error': 'Network is already training'}), 409

    data = request.get_json(silent=True) or {}
    max_epochs = data.get('max_epochs', DEFAULT_MAX_EPOCHS)
    target_loss = data.get('target_loss')

    if not isinstance(max_epochs, int) or isinstance(max_epochs, bool) or max_epochs < 1:
        return jsonify({'error': 'max_epochs must be a positive integer'}), 400
    if target_loss is not None and (not isinstance(target_loss, (int, float)) or target_loss < 0):
        return jsonify({'error': 'target_loss must be a non-negative number'}), 400

    try:
        samples = samples_from_records(data.get('dataset'))
    except DatasetError as e:
        return jsonify({'error': str(e)}), 400
    if not samples:
        return jsonify({'error': 'dataset must not be empty'}), 400

    net = info['network']
    for index, (input_vector, label) in enumerate(samples):
        if len(input_vector) != net.sizes[0] or len(label) != net.sizes[-1]:
            return jsonify({
                'error': f'Record {index} does not match architecture {net.sizes}'
            }), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epoch': 0,
        'max_epochs': max_epochs,
        'loss': None,
        'stop_requested': False
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"{len(samples)} samples, max_epochs={max_epochs}, target_loss={target_loss}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task,
        network_id, job_id, samples, max_epochs, target_loss
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    samples: List,
    max_epochs: int,
    target_loss: Optional[float]
) -> None:
    """
    Background task that trains a neural network.

    The stop policy lives in the epoch callback: training ends after
    ``max_epochs``, when the loss reaches ``target_loss``, or when a stop
    was requested for the job.
    """
    job = training_jobs[job_id]

    def on_epoch_complete(loss: float) -> bool:
        """Called after each training epoch to send progress updates."""
        epoch = trainer.epochs
        progress = (epoch / max_epochs) * 100

        job['status'] = 'training'
        job['epoch'] = epoch
        job['loss'] = loss
        job['progress'] = progress
        info['loss_history'].append(loss)

        # Send update to connected clients via WebSocket
        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': epoch,
            'max_epochs': max_epochs,
            'loss': loss,
            'progress': progress
        })

        # Let gevent send the message and serve other requests
        gevent.sleep(0)

        if job['stop_requested']:
            logger.info(f"Stop requested for job {job_id} at epoch {epoch}")
            return False
        if target_loss is not None and loss <= target_loss:
            return False
        return epoch < max_epochs

    try:
        if network_id not in active_networks:
            raise LookupError(f"Network {network_id} was deleted before training started")
        info = active_networks[network_id]
        net = info['network']
        trainer = Trainer(net)

        logger.info(f"Job {job_id}: training {network_id}")
        trainer.train(samples, on_epoch_complete)

        final_loss = trainer.history[-1]
        info['trained'] = True
        info['final_loss'] = final_loss
        info['epochs'] += trainer.epochs

        job['status'] = 'stopped' if job['stop_requested'] else 'completed'
        job['progress'] = 100

        # A network deleted mid-training must not be written back
        if network_id not in active_networks:
            logger.info(f"Job {job_id}: {network_id} was deleted, not saving")
        elif save_network(net, network_id, model_dir=MODEL_DIR, trained=True,
                          final_loss=final_loss, epochs=info['epochs']):
            info['saved'] = True

        logger.info(
            f"Training finished for job {job_id}: {trainer.epochs} epochs, "
            f"loss {final_loss:.6f}"
        )

        # Notify clients that training is complete
        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': job['status'],
            'epochs': trainer.epochs,
            'loss': final_loss,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        if isinstance(e, NetworkError):
            logger.error(f"Training failed for job {job_id}: {e}")
        else:
            logger.exception(f"Job {job_id} failed: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Job status: unknown job {job_id}")
        return jsonify({'error': 'Training job not found'}), 404

    return jsonify(training_jobs[job_id]), 200


@app.route('/api/training/<job_id>/stop', methods=['POST'])
def stop_training(job_id: str):
    """
    Ask a training job to stop.

    Training is never interrupted mid-epoch; the job stops when the
    current epoch completes.
    """
    job = training_jobs.get(job_id)
    if job is None:
        return jsonify({'error': 'Training job not found'}), 404
    if job['status'] not in ACTIVE_JOB_STATUSES:
        return jsonify({'error': f"Training job is already {job['status']}"}), 409

    job['stop_requested'] = True
    logger.info(f"Stop requested for training job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'stop_requested'}), 202


@app.route('/api/networks/<network_id>/output', methods=['POST'])
def compute_output(network_id: str):
    """
    Run an input vector through a network.

    Request body:
        {'input': [0.5]}

    Returns:
        JSON with the output vector
    """
    info = get_active_network(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    input_vector = data.get('input')
    if not isinstance(input_vector, list) or not all(
        isinstance(x, (int, float)) and not isinstance(x, bool) for x in input_vector
    ):
        return jsonify({'error': 'input must be a list of numbers'}), 400

    try:
        output = info['network'].compute_output(input_vector)
    except InputSizeMismatchError as e:
        return jsonify({'error': str(e)}), 400
    except NullActivationError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({
        'network_id': network_id,
        'input': input_vector,
        'output': output
    }), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_network_endpoint(network_id: str):
    """Persist a network into the model store."""
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    if not save_network(info['network'], network_id, model_dir=MODEL_DIR,
                        trained=info['trained'], final_loss=info['final_loss'],
                        epochs=info['epochs']):
        return jsonify({'error': 'Failed to save network'}), 500

    info['saved'] = True
    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = False
    if network_id in active_networks:
        del active_networks[network_id]
        deleted_from_memory = True

    # Running jobs finish their current epoch and then stop
    for job in training_jobs.values():
        if job.get('network_id') == network_id and job.get('status') in ACTIVE_JOB_STATUSES:
            job['stop_requested'] = True

    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete: unknown network {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Removed {network_id} (memory={deleted_from_memory}, store={deleted_from_disk})")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Delete stored networks idle for longer than ``days``.

    Request body (optional):
        {'days': 2}  # defaults to 2

    Returns:
        JSON with deleted_count, days, and message
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if not isinstance(days, (int, float)) or isinstance(days, bool) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    sync_active_networks()
    logger.info(f"Cleanup request removed {deleted_count} network(s) idle for over {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def create_loss_image(losses: List[float], title: str) -> str:
    """
    Create a base64-encoded PNG plot of per-epoch losses.

    Args:
        losses: Mean loss of each epoch
        title: Plot title

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(5, 3))
    plt.plot(range(1, len(losses) + 1), losses)
    plt.xlabel('Epoch')
    plt.ylabel('Mean loss')
    plt.title(title)

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


@app.route('/api/networks/<network_id>/loss_plot', methods=['GET'])
def get_loss_plot(network_id: str):
    """Return the loss history of a network and a plot of it."""
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    losses = info['loss_history']
    if not losses:
        return jsonify({'error': 'Network has no training history'}), 404

    return jsonify({
        'network_id': network_id,
        'losses': losses,
        'image_data': create_loss_image(losses, f"Network {info['architecture']}")
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    # Check if running in cloud environment (Railway, etc.)
    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Serving in production mode on port {port}")
    else:
        logger.info(f"Serving on http://localhost:{port}/")

    bootstrap()

    # Start the server with WebSocket support
    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is taken")
            sys.exit(1)
        else:
            raise

"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for JSON file persistence and the SQLite model store.
"""

import pytest
import os
import sys
import json
import sqlite3

import numpy as np

# Add the repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ffnet.activation import Sigmoid
from ffnet.dataset import Sample
from ffnet.exceptions import NullActivationError, PersistenceParseError
from ffnet.network import Network
from ffnet.model_persistence import (
    dumps_network,
    loads_network,
    save_network_file,
    load_network_file,
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    get_network_metadata,
    delete_old_networks,
    ModelDatabase
)


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def simple_network():
    """Create a simple 3-layer network for testing."""
    return Network([3, 4, 2], Sigmoid(), seed=3)


@pytest.fixture
def trained_network(simple_network):
    """Create a simple network with some training applied."""
    rng = np.random.default_rng(0)
    training_data = []
    for i in range(10):
        y = [0.0, 0.0]
        y[i % 2] = 1.0
        training_data.append(Sample(rng.random(3).tolist(), y))

    epochs = []
    simple_network.train(training_data, lambda loss: epochs.append(loss) or len(epochs) < 3)
    return simple_network


def age_network(db_path, network_id, modifier):
    """Move a network's timestamps into the past."""
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute('''
        UPDATE networks
        SET created_at = datetime('now', ?), updated_at = datetime('now', ?)
        WHERE network_id = ?
    ''', (modifier, modifier, network_id))
    conn.commit()
    conn.close()


@pytest.mark.unit
class TestNetworkFile:
    """Test saving and loading networks as JSON files."""

    def test_round_trip_outputs_identical(self, trained_network, tmp_path):
        """Test that a reloaded network computes exactly the same outputs."""
        path = str(tmp_path / "net.json")
        inputs = [[0.1, 0.2, 0.3], [0.9, 0.0, 0.5], [1.0, 1.0, 1.0]]
        expected = [trained_network.compute_output(x) for x in inputs]

        trained_network.save(path)
        loaded = Network.load(path)
        loaded.set_activation(Sigmoid())

        assert [loaded.compute_output(x) for x in inputs] == expected

    def test_round_trip_preserves_static_state(self, trained_network, tmp_path):
        path = str(tmp_path / "net.json")
        save_network_file(trained_network, path)
        loaded = load_network_file(path)

        assert loaded.sizes == trained_network.sizes
        for layer_o, layer_l in zip(trained_network.layers, loaded.layers):
            for original, restored in zip(layer_o, layer_l):
                assert np.array_equal(original.weights, restored.weights)
                assert np.array_equal(original.delta_w, restored.delta_w)
                assert restored.bias == original.bias
                assert restored.momentum == original.momentum
                assert restored.learning_rate == original.learning_rate
                assert restored.activation_name == 'sigmoid'

    def test_links_rebuilt_on_load(self, simple_network, tmp_path):
        """Test that predecessors are rebuilt by position."""
        path = str(tmp_path / "net.json")
        simple_network.save(path)
        loaded = Network.load(path)

        assert loaded.layers[0][0].inputs == []
        for i in range(1, len(loaded.layers)):
            for neuron in loaded.layers[i]:
                predecessors = loaded.predecessors(neuron)
                assert len(predecessors) == len(loaded.layers[i - 1])
                for k, pred in enumerate(predecessors):
                    assert pred is loaded.layers[i - 1][k]

    def test_loaded_network_needs_activation(self, simple_network, tmp_path):
        path = str(tmp_path / "net.json")
        simple_network.save(path)
        loaded = Network.load(path)

        for layer in loaded.layers:
            for neuron in layer:
                assert neuron.activation is None
        with pytest.raises(NullActivationError):
            loaded.compute_output([0.1, 0.2, 0.3])

    def test_load_with_activation(self, simple_network, tmp_path):
        path = str(tmp_path / "net.json")
        x = [0.4, 0.5, 0.6]
        expected = simple_network.compute_output(x)
        simple_network.save(path)

        loaded = Network.load(path, activation='sigmoid')
        assert loaded.compute_output(x) == expected

    def test_loaded_network_can_resume_training(self, trained_network, tmp_path):
        """Test that momentum memory survives so training continues identically."""
        path = str(tmp_path / "net.json")
        trained_network.save(path)
        loaded = Network.load(path, activation=Sigmoid())
        dataset = [Sample([0.3, 0.6, 0.9], [1.0, 0.0])]

        trained_network.train(dataset, lambda loss: False)
        loaded.train(dataset, lambda loss: False)

        for layer_o, layer_l in zip(trained_network.layers, loaded.layers):
            for original, restored in zip(layer_o, layer_l):
                assert np.array_equal(original.weights, restored.weights)

    def test_document_format(self, simple_network):
        """Test the persisted fields and that transient state is left out."""
        simple_network.compute_output([0.1, 0.2, 0.3])
        data = json.loads(dumps_network(simple_network))

        assert list(data) == ['layers']
        assert [len(layer) for layer in data['layers']] == [3, 4, 2]
        record = data['layers'][1][0]
        assert set(record) == {
            'bias', 'weights', 'delta_weights', 'learning_rate',
            'momentum', 'activation_name'
        }
        assert len(record['weights']) == 3
        assert data['layers'][0][0]['weights'] == [1.0]

    def test_missing_file(self, tmp_path):
        """Test that file errors propagate unchanged."""
        with pytest.raises(FileNotFoundError):
            Network.load(str(tmp_path / "missing.json"))

    def test_unwritable_path(self, simple_network, tmp_path):
        with pytest.raises(OSError):
            simple_network.save(str(tmp_path / "no_such_dir" / "net.json"))

    @pytest.mark.parametrize("document", [
        "not json",
        "[]",
        "{}",
        '{"layers": 5}',
        '{"layers": [[]]}',
        '{"layers": [[{"bias": 1.0}]]}',
    ])
    def test_malformed_documents(self, document):
        with pytest.raises(PersistenceParseError):
            loads_network(document)

    def test_weight_count_mismatch(self, simple_network):
        data = json.loads(dumps_network(simple_network))
        data['layers'][2][1]['weights'] = [0.5, 0.5]
        with pytest.raises(PersistenceParseError):
            loads_network(json.dumps(data))

    def test_delta_weight_count_mismatch(self, simple_network):
        data = json.loads(dumps_network(simple_network))
        data['layers'][1][0]['delta_weights'] = [0.0]
        with pytest.raises(PersistenceParseError):
            loads_network(json.dumps(data))

    def test_single_layer_rejected(self, simple_network):
        data = json.loads(dumps_network(simple_network))
        data['layers'] = data['layers'][:1]
        with pytest.raises(PersistenceParseError):
            loads_network(json.dumps(data))

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text('{"layers": [[{"bias": ')
        with pytest.raises(PersistenceParseError):
            load_network_file(str(path))


@pytest.mark.unit
class TestModelPersistence:
    """Test basic model store operations."""

    def test_save_network_creates_database(self, simple_network, temp_db_dir):
        """Test that saving a network creates the database file."""
        success = save_network(
            simple_network,
            "test_network_1",
            model_dir=temp_db_dir,
            trained=False
        )

        assert success is True
        assert os.path.exists(f"{temp_db_dir}/networks.db")

    def test_save_network_with_metadata(self, trained_network, temp_db_dir):
        """Test that network metadata is saved correctly."""
        network_id = "trained_network_1"

        success = save_network(
            trained_network,
            network_id,
            model_dir=temp_db_dir,
            trained=True,
            final_loss=0.125,
            epochs=3
        )

        assert success is True

        metadata = get_network_metadata(network_id, temp_db_dir)
        assert metadata is not None
        assert metadata['network_id'] == network_id
        assert metadata['trained'] is True
        assert metadata['final_loss'] == 0.125
        assert metadata['epochs'] == 3
        assert metadata['architecture'] == [3, 4, 2]
        assert metadata['activation'] == 'sigmoid'

    def test_load_network_returns_network(self, simple_network, temp_db_dir):
        """Test that loading a network returns a valid Network object."""
        save_network(simple_network, "test_network_2", model_dir=temp_db_dir)
        loaded_network = load_network("test_network_2", temp_db_dir)

        assert loaded_network is not None
        assert isinstance(loaded_network, Network)
        assert loaded_network.sizes == simple_network.sizes

    def test_load_nonexistent_network(self, temp_db_dir):
        """Test that loading a non-existent network returns None."""
        assert load_network("nonexistent", temp_db_dir) is None

    def test_load_preserves_outputs(self, trained_network, temp_db_dir):
        """Test that a stored network computes the same outputs after loading."""
        x = [0.2, 0.4, 0.8]
        expected = trained_network.compute_output(x)

        save_network(trained_network, "test_network_3", model_dir=temp_db_dir)
        loaded_network = load_network("test_network_3", temp_db_dir, activation=Sigmoid())

        assert loaded_network.compute_output(x) == expected

    def test_invalid_network_id(self, simple_network, temp_db_dir):
        assert save_network(simple_network, "", model_dir=temp_db_dir) is False
        assert load_network("", temp_db_dir) is None

    def test_negative_loss_rejected(self, simple_network, temp_db_dir):
        with pytest.raises(ValueError):
            save_network(simple_network, "bad", model_dir=temp_db_dir, final_loss=-1.0)

    def test_list_saved_networks_empty(self, temp_db_dir):
        """Test listing networks when database is empty."""
        assert list_saved_networks(temp_db_dir) == []

    def test_list_saved_networks(self, simple_network, temp_db_dir):
        """Test that listing networks returns correct metadata."""
        save_network(simple_network, "net1", model_dir=temp_db_dir, trained=True, final_loss=0.01)
        save_network(simple_network, "net2", model_dir=temp_db_dir, trained=False)

        networks = list_saved_networks(temp_db_dir)

        assert len(networks) == 2
        assert {net['network_id'] for net in networks} == {"net1", "net2"}

    def test_list_saved_networks_includes_metadata(self, simple_network, temp_db_dir):
        """Test that listed networks include all expected metadata fields."""
        save_network(
            simple_network,
            "metadata_test",
            model_dir=temp_db_dir,
            trained=True,
            final_loss=0.05,
            epochs=10
        )

        network = list_saved_networks(temp_db_dir)[0]

        assert network['network_id'] == "metadata_test"
        assert network['architecture'] == [3, 4, 2]
        assert network['trained'] is True
        assert network['final_loss'] == 0.05
        assert network['epochs'] == 10
        assert 'created_at' in network
        assert 'updated_at' in network
        assert network['weights_shape'] == [[3, 1], [4, 3], [2, 4]]

    def test_delete_network_success(self, simple_network, temp_db_dir):
        """Test successful network deletion."""
        save_network(simple_network, "delete_test", model_dir=temp_db_dir)
        assert load_network("delete_test", temp_db_dir) is not None

        assert delete_network("delete_test", temp_db_dir) is True
        assert load_network("delete_test", temp_db_dir) is None

    def test_delete_nonexistent_network(self, temp_db_dir):
        """Test that deleting a non-existent network returns False."""
        ModelDatabase(db_path=f'{temp_db_dir}/networks.db')
        assert delete_network("nonexistent", temp_db_dir) is False

    def test_update_network(self, simple_network, temp_db_dir):
        """Test that saving a network with the same ID updates it."""
        network_id = "update_test"
        save_network(simple_network, network_id, model_dir=temp_db_dir, trained=False)
        assert get_network_metadata(network_id, temp_db_dir)['trained'] is False

        save_network(
            simple_network,
            network_id,
            model_dir=temp_db_dir,
            trained=True,
            final_loss=0.02
        )

        metadata = get_network_metadata(network_id, temp_db_dir)
        assert metadata['trained'] is True
        assert metadata['final_loss'] == 0.02
        assert len(list_saved_networks(temp_db_dir)) == 1

    def test_update_keeps_creation_time(self, simple_network, temp_db_dir):
        db_path = os.path.join(temp_db_dir, "networks.db")
        save_network(simple_network, "aged", model_dir=temp_db_dir)
        age_network(db_path, "aged", '-3 days')
        created = get_network_metadata("aged", temp_db_dir)['created_at']

        save_network(simple_network, "aged", model_dir=temp_db_dir, trained=True)

        assert get_network_metadata("aged", temp_db_dir)['created_at'] == created

    def test_corrupt_record_returns_none(self, simple_network, temp_db_dir):
        db_path = os.path.join(temp_db_dir, "networks.db")
        save_network(simple_network, "corrupt", model_dir=temp_db_dir)
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE networks SET network_data = '{' WHERE network_id = 'corrupt'")
        conn.commit()
        conn.close()

        assert load_network("corrupt", temp_db_dir) is None
        with pytest.raises(PersistenceParseError):
            ModelDatabase(db_path).load_network_from_db("corrupt")


@pytest.mark.integration
class TestPersistenceIntegration:
    """Integration tests for model persistence."""

    def test_save_load_train_cycle(self, simple_network, temp_db_dir):
        """Test complete cycle: save, load, train, save again."""
        network_id = "cycle_test"
        save_network(simple_network, network_id, model_dir=temp_db_dir, trained=False)

        loaded_network = load_network(network_id, temp_db_dir)
        loaded_network.restore_activation()

        training_data = [
            Sample([0.1, 0.2, 0.3], [1.0, 0.0]),
            Sample([0.3, 0.2, 0.1], [0.0, 1.0])
        ]
        losses = []
        loaded_network.train(training_data, lambda loss: losses.append(loss) or len(losses) < 5)

        save_network(
            loaded_network,
            network_id,
            model_dir=temp_db_dir,
            trained=True,
            final_loss=losses[-1],
            epochs=len(losses)
        )

        final_network = load_network(network_id, temp_db_dir, activation='sigmoid')
        metadata = get_network_metadata(network_id, temp_db_dir)

        assert final_network.compute_output([0.5, 0.5, 0.5]) == \
            loaded_network.compute_output([0.5, 0.5, 0.5])
        assert metadata['trained'] is True
        assert metadata['epochs'] == 5

    def test_multiple_networks_coexist(self, temp_db_dir):
        """Test that multiple networks can coexist in the database."""
        networks_to_create = [
            ([1, 8, 1], "sine_network"),
            ([3, 4, 2], "simple_network"),
            ([10, 20, 20, 10], "deep_network")
        ]

        for architecture, network_id in networks_to_create:
            save_network(Network(architecture, Sigmoid(), seed=0), network_id, model_dir=temp_db_dir)

        assert len(list_saved_networks(temp_db_dir)) == len(networks_to_create)

        for architecture, network_id in networks_to_create:
            loaded = load_network(network_id, temp_db_dir)
            assert loaded is not None
            assert loaded.sizes == architecture


class TestDeleteOldNetworks:
    """Tests for automatic cleanup of old networks."""

    def test_delete_old_networks_basic(self, simple_network, temp_db_dir):
        network_id = "test_network"
        save_network(simple_network, network_id, model_dir=temp_db_dir)
        age_network(os.path.join(temp_db_dir, "networks.db"), network_id, '-3 days')

        deleted_count = delete_old_networks(days=2, model_dir=temp_db_dir)

        assert deleted_count == 1
        assert load_network(network_id, temp_db_dir) is None

    def test_delete_old_networks_preserves_recent(self, simple_network, temp_db_dir):
        save_network(simple_network, "recent_network", model_dir=temp_db_dir)

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0
        assert load_network("recent_network", temp_db_dir) is not None

    def test_delete_old_networks_mixed_ages(self, simple_network, temp_db_dir):
        old_ids = ["old_1", "old_2"]
        recent_ids = ["recent_1", "recent_2"]
        db_path = os.path.join(temp_db_dir, "networks.db")

        for network_id in old_ids + recent_ids:
            save_network(simple_network, network_id, model_dir=temp_db_dir)
        for network_id in old_ids:
            age_network(db_path, network_id, '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == len(old_ids)
        for network_id in old_ids:
            assert load_network(network_id, temp_db_dir) is None
        for network_id in recent_ids:
            assert load_network(network_id, temp_db_dir) is not None

    def test_resaved_network_survives_cleanup(self, simple_network, temp_db_dir):
        """Test that age is measured from the last save, not creation."""
        save_network(simple_network, "retrained", model_dir=temp_db_dir)
        age_network(os.path.join(temp_db_dir, "networks.db"), "retrained", '-3 days')

        save_network(simple_network, "retrained", model_dir=temp_db_dir, trained=True)

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0
        assert load_network("retrained", temp_db_dir) is not None

    def test_delete_old_networks_empty_db(self, temp_db_dir):
        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0

    def test_delete_old_networks_negative_days(self, temp_db_dir):
        """Test that negative days raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            delete_old_networks(days=-1, model_dir=temp_db_dir)
        assert "non-negative" in str(exc_info.value)

    def test_model_database_delete_old_networks_method(self, simple_network, temp_db_dir):
        """Test ModelDatabase.delete_old_networks_from_db directly."""
        db = ModelDatabase(db_path=os.path.join(temp_db_dir, "networks.db"))
        db.save_network_to_db(simple_network, "test_network", trained=False)
        age_network(db.db_path, "test_network", '-3 days')

        assert db.delete_old_networks_from_db(days=2) == 1
        assert db.load_network_from_db("test_network") is None

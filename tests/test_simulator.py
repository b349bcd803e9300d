import pytest

from mqtt_simulator import simulator as simulator_module
from mqtt_simulator.config import SimulatorConfig
from mqtt_simulator.errors import ConfigError
from mqtt_simulator.simulator import MQTTSimulator

from conftest import FakeClient, FakeEventLoopGroup, FakeScheduler, not_authorized


@pytest.fixture
def clients():
    return []


@pytest.fixture
def make_simulator(clients, rng, monkeypatch):
    monkeypatch.setattr(simulator_module.time, "sleep", lambda seconds: None)

    def client_factory(credential, settings):
        client = FakeClient(credential, settings)
        clients.append(client)
        return client

    def factory(config):
        return MQTTSimulator(config, event_loops=FakeEventLoopGroup(),
                             scheduler=FakeScheduler(), client_factory=client_factory,
                             rng=rng)
    return factory


def test_connects_every_client_in_range(make_simulator, clients, small_config):
    small_config.start = 5
    simulator = make_simulator(small_config)

    simulator.start()

    assert [c.credential.client_id for c in clients] == ["test5", "test6", "test7", "test8"]
    assert {s.client_id for s in simulator.registry.snapshot()} == {
        "test5", "test6", "test7", "test8"}
    assert simulator.event_loops.started and simulator.scheduler.started
    assert simulator.stats["connected"] == 4
    assert all(c.connect_calls[0][:2] == ("broker.local", 1883) for c in clients)


def test_clients_are_spread_over_bind_interfaces(make_simulator, clients, small_config):
    small_config.binds = ["10.0.0.2", "10.0.0.3"]
    make_simulator(small_config).start()

    binds = [c.connect_calls[0][3:] for c in clients]
    assert binds == [("10.0.0.2", 10001), ("10.0.0.2", 10002),
                     ("10.0.0.3", 10001), ("10.0.0.3", 10002)]


def test_more_interfaces_than_clients_skips_the_clients(make_simulator, clients):
    config = SimulatorConfig(address="broker.local", limit=1, connect_wait=0.01,
                             binds=["10.0.0.2", "10.0.0.3"])
    simulator = make_simulator(config)

    simulator.start()

    assert clients == []
    assert len(simulator.registry) == 0


def test_registration_runs_before_connecting(make_simulator, clients, small_config):
    order = []

    def registration(simulator):
        order.append(len(clients))
        simulator.bind_handler("/read-property", lambda message, session: None)
        simulator.on_connect(lambda session: order.append(session.client_id))

    simulator = make_simulator(small_config)
    simulator.start(registration)

    assert order == [0, "test0", "test1", "test2", "test3"]
    assert "/read-property" in simulator.handlers.handlers


def test_auth_override_supplies_credentials(make_simulator, clients, small_config):
    def auth(index, credential):
        credential.username = f"user{index}"
        credential.password = "secret"

    simulator = make_simulator(small_config)
    simulator.start(lambda sim: sim.on_auth(auth))

    assert [c.credential.username for c in clients] == ["user0", "user1", "user2", "user3"]
    assert clients[0].credential.password == "secret"


def test_default_credentials_use_secure_id(make_simulator, clients, small_config):
    small_config.secure_id = "acme"
    make_simulator(small_config).start()
    assert all(c.credential.username.startswith("acme|") for c in clients)


def test_event_push_scheduled_when_enabled(make_simulator, small_config):
    small_config.enable_event = True
    small_config.event_rate = 500
    simulator = make_simulator(small_config)
    events = []

    simulator.start(lambda sim: sim.on_event(lambda remaining, s: events.append(remaining)))

    [(fn, initial_delay, period)] = simulator.scheduler.rates
    assert (initial_delay, period) == (2.0, 0.5)
    fn()
    assert events == [4, 3, 2, 1, 0]


def test_no_event_push_without_emitter(make_simulator, small_config):
    small_config.enable_event = True
    simulator = make_simulator(small_config)
    simulator.start()
    assert simulator.scheduler.rates == []
    assert simulator.event_scheduler is None


def test_no_event_push_when_disabled(make_simulator, small_config):
    simulator = make_simulator(small_config)
    simulator.start(lambda sim: sim.on_event(lambda remaining, s: None))
    assert simulator.scheduler.rates == []


def test_run_rate_and_run_delay_use_milliseconds(make_simulator, small_config):
    simulator = make_simulator(small_config)
    tick = lambda: None  # noqa: E731

    simulator.run_rate(tick, 250)
    simulator.run_delay(tick, 1500)

    assert simulator.scheduler.rates == [(tick, 2.0, 0.25)]
    assert simulator.scheduler.once == [(tick, 1.5)]


def test_rejected_clients_are_not_registered(make_simulator, clients, small_config):
    simulator = make_simulator(small_config)
    simulator.client_factory = _rejecting(simulator.client_factory, {"test1", "test2"})

    simulator.start()

    assert {s.client_id for s in simulator.registry.snapshot()} == {"test0", "test3"}
    assert simulator.stats["rejected"] == 2


def _rejecting(factory, rejected_ids):
    def wrapped(credential, settings):
        client = factory(credential, settings)
        if credential.client_id in rejected_ids:
            client.connack = not_authorized()
        return client
    return wrapped


def test_missing_tls_material_fails_before_connecting(make_simulator, clients, small_config,
                                                      tmp_path):
    small_config.ssl = True
    small_config.p12_path = str(tmp_path / "client.p12")
    small_config.cer_path = str(tmp_path / "server.cer")
    simulator = make_simulator(small_config)

    with pytest.raises(ConfigError):
        simulator.start()
    assert clients == []
    assert not simulator.event_loops.started


def test_shutdown_disconnects_everything(make_simulator, clients, small_config):
    simulator = make_simulator(small_config)
    simulator.start()

    simulator.shutdown()

    assert all(c.disconnect_calls == 1 for c in clients)
    assert simulator.scheduler.stopped
    assert simulator.event_loops.stopped
    assert len(simulator.event_loops.worker.detached) == 4


def test_describe_config_masks_secrets(small_config, make_simulator):
    text = make_simulator(small_config).describe_config()
    assert '"secure_key": "******"' in text
    assert "broker.local" in text


def test_statistics_count_sessions_and_rejections(make_simulator, small_config):
    simulator = make_simulator(small_config)
    simulator.client_factory = _rejecting(simulator.client_factory, {"test0"})
    simulator.start()

    stats = simulator.statistics()

    assert stats["sessions"] == 3
    assert stats["connected"] == 3
    assert stats["rejected"] == 1
    assert stats["terminated"] == 0

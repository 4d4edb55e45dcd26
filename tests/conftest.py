"""Shared fixtures: a fake AppDaemon handle and a loaded configuration."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest

from pystove.core.config_loader import ConfigLoader
from pystove.core.persistence import PersistenceManager


# Monday
MONDAY_NOON = datetime(2025, 1, 6, 12, 0, 0)


CONFIG_YAML = """
environment: test
persistence_file: {state_file}
user_id: default
stove:
  status_entity: sensor.stove_status
rooms:
  - id: lounge
    name: Lounge
    climate: climate.lounge
  - id: kitchen
    name: Kitchen
    climate: climate.kitchen
schedule:
  week:
    mon: ["06:30", "17:00"]
    tue: ["06:30", "17:00"]
    wed: ["06:30", "17:00"]
    thu: ["06:30", "17:00"]
    fri: ["06:30", "17:00"]
    sat: ["08:00"]
    sun: ["08:00"]
maintenance:
  target_hours: 50
notifications:
  throttle_s: 1800
event_log:
  enabled: true
  dir: {log_dir}
"""


class FakeAD:
    """Records what components ask of AppDaemon and serves entity states."""

    def __init__(self) -> None:
        self.logs: List[Tuple[str, str]] = []
        self.states: Dict[str, Dict[str, Any]] = {}
        self.service_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_services: set = set()
        self.published: Dict[str, Dict[str, Any]] = {}
        self.services: Dict[str, Any] = {}
        self.endpoints: Dict[str, Any] = {}

    def log(self, msg: str, level: str = "INFO") -> None:
        self.logs.append((level, msg))

    def set_entity(self, entity_id: str, state: Any, **attributes) -> None:
        self.states[entity_id] = {'state': state, 'attributes': dict(attributes)}

    def set_climate(self, entity_id: str, setpoint: Optional[float], state: str = "heat",
                    preset_mode: Optional[str] = None) -> None:
        self.set_entity(entity_id, state, temperature=setpoint, preset_mode=preset_mode)

    def get_state(self, entity_id: str, attribute: Optional[str] = None):
        entity = self.states.get(entity_id)
        if entity is None:
            return None
        if attribute == 'all':
            return {'state': entity['state'], 'attributes': dict(entity['attributes'])}
        if attribute:
            return entity['attributes'].get(attribute)
        return entity['state']

    def call_service(self, service: str, **kwargs) -> None:
        self.service_calls.append((service, kwargs))
        if service in self.fail_services:
            raise RuntimeError(f"{service} unavailable")
        entity_id = kwargs.get('entity_id')
        if service == 'climate/set_temperature' and entity_id in self.states:
            self.states[entity_id]['attributes']['temperature'] = kwargs['temperature']
        elif service == 'climate/set_preset_mode' and entity_id in self.states:
            self.states[entity_id]['attributes']['preset_mode'] = kwargs['preset_mode']

    def calls_to(self, service: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.service_calls if name == service]

    def set_state(self, entity_id: str, state=None, attributes=None, replace=False) -> None:
        self.published[entity_id] = {'state': state, 'attributes': attributes or {}}

    def register_service(self, name: str, callback) -> None:
        self.services[name] = callback

    def register_endpoint(self, callback, name: str) -> None:
        self.endpoints[name] = callback

    def messages(self, level: Optional[str] = None) -> List[str]:
        return [msg for lvl, msg in self.logs if level is None or lvl == level]


@pytest.fixture
def ad() -> FakeAD:
    fake = FakeAD()
    fake.set_climate('climate.lounge', 20.0)
    fake.set_climate('climate.kitchen', 19.0)
    fake.set_entity('sensor.stove_status', 'WORK 1')
    return fake


@pytest.fixture
def config_dir(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "stove.yaml").write_text(
        CONFIG_YAML.format(state_file=tmp_path / "state" / "state.json", log_dir=tmp_path / "logs")
    )
    return config_dir


@pytest.fixture
def config(ad, config_dir) -> ConfigLoader:
    loader = ConfigLoader(ad, str(config_dir))
    loader.load_all()
    return loader


@pytest.fixture
def store(config) -> PersistenceManager:
    system = config.system_config
    return PersistenceManager(system['persistence_file'], system['environment'])


@pytest.fixture
def now() -> datetime:
    return MONDAY_NOON

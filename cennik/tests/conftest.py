"""Shared test fixtures for the cennik test suite."""

import copy
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cennik.error_logging import init_error_logging_db
from cennik.mail import Mailer
from cennik.scheduled_changes import clear_read_cache
from cennik.search import clear_search_cache
from cennik.storage import CatalogStore

BOMAR_DATA = {
    "title": "Cennik Bomar 2024",
    "categories": {
        "Stoły": {
            "TRIM": {
                "image": "/images/bomar/stoly/trim.webp",
                "material": "dąb",
                "prices": {"Grupa I": 1000, "Grupa II": 1200},
            },
            "Łukasz": {
                "previousName": "LUKAS",
                "prices": {"Grupa I": 850},
                "discount": 10,
            },
        },
        "Krzesła": {
            "Kora": {
                "sizes": [
                    {"dimension": "45x50", "prices": 400},
                    {"dimension": "50x55", "prices": 450},
                ],
            },
        },
    },
}

MP_DATA = {
    "meta_data": {"company": "MP Nidzica", "valid_from": "2024-01-01"},
    "products": [
        {
            "name": "Fotel Nidzica",
            "elements": [
                {"code": "1F", "prices": {"A": 1500, "B": 1700}},
                {"code": "2F", "prices": {"A": 2500, "B": 2800}},
            ],
        },
        {
            "name": "Pufa",
            "previousName": "Puf Mały",
            "elements": [{"code": "PF", "price": 300}],
        },
    ],
}

PUSZMAN_DATA = {
    "Arkusz1": [
        {"MODEL": "BOSTON", "grupa I": 2000, "grupa II": 2200, "KOLOR NOGI": "czarny"},
        {"MODEL": "MILANO", "grupa I": 3000, "grupa II": 3300, "KOLOR NOGI": ""},
    ]
}

PRODUCERS = [
    {
        "slug": "bomar",
        "displayName": "Bomar",
        "dataFile": "Bomar.json",
        "layoutType": "bomar",
        "title": "Cennik Bomar",
        "color": "#7a4b18",
        "priceFactor": 1.0,
    },
    {
        "slug": "mp-nidzica",
        "displayName": "MP Nidzica",
        "dataFile": "mp.json",
        "layoutType": "mpnidzica",
        "title": "Cennik MP Nidzica",
        "color": "#7a1822",
        "priceFactor": 1.0,
    },
    {
        "slug": "puszman",
        "displayName": "Puszman",
        "dataFile": "puszman.json",
        "layoutType": "puszman",
        "title": "Cennik Puszman",
        "color": "#7a3318",
        "priceFactor": 1.0,
        "priceGroups": ["grupa I", "grupa II"],
    },
]

CREDENTIALS = [
    {"username": "admin", "password": "secret", "role": "admin"},
    {"username": "handlowiec", "password": "sprzedaz", "role": "viewer"},
]


def _write(path: Path, data) -> None:
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path):
    """Fresh caches and a throwaway error log for every test."""
    clear_read_cache()
    clear_search_cache()
    init_error_logging_db(tmp_path / "errors.db")
    yield
    clear_read_cache()
    clear_search_cache()


@pytest.fixture
def data_dir(tmp_path):
    """Data directory seeded with three producers, one per layout."""
    directory = tmp_path / "data"
    directory.mkdir()
    _write(directory / "producers.json", copy.deepcopy(PRODUCERS))
    _write(directory / "Bomar.json", copy.deepcopy(BOMAR_DATA))
    _write(directory / "mp.json", copy.deepcopy(MP_DATA))
    _write(directory / "puszman.json", copy.deepcopy(PUSZMAN_DATA))
    _write(directory / "credentials.json", copy.deepcopy(CREDENTIALS))
    return directory


@pytest.fixture
def catalog_store(data_dir):
    return CatalogStore(data_dir)


@pytest.fixture
def public_dir(tmp_path):
    directory = tmp_path / "public"
    directory.mkdir()
    return directory


@pytest.fixture
def db_path(tmp_path):
    from cennik.overrides import init_db

    path = tmp_path / "cennik.db"
    init_db(path)
    return path


@pytest.fixture
def mock_mailer():
    """Mailer double; every send method is a MagicMock."""
    return MagicMock(spec=Mailer)


@pytest.fixture
def mock_openai_client():
    """Create a mock OpenAI client for testing without API calls."""
    client = MagicMock()
    client.responses.create.return_value = MagicMock(output_text="")
    return client


@pytest.fixture
def app(data_dir, public_dir, tmp_path, mock_mailer, mock_openai_client):
    from cennik.app import create_app

    app = create_app(
        {
            "TESTING": True,
            "DATA_DIR": data_dir,
            "PUBLIC_DIR": public_dir,
            "DB_PATH": tmp_path / "cennik.db",
            "LOG_DIR": tmp_path / "logs",
            "SITE_USER": None,
            "SITE_PASS": None,
            "SCHEDULED_CACHE_TTL": 0,
            "SEARCH_CACHE_TTL": 0,
        }
    )
    app.extensions["mailer"] = mock_mailer
    app.extensions["openai_client"] = mock_openai_client
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    with app.test_client() as test_client:
        yield test_client

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from sitekb.models.client import Client
from sitekb.models.enums import EmbeddingModel


def test_client_normalizes_main_domain() -> None:
    client = Client(
        id=str(uuid4()),
        name="Acme",
        embedding_model=EmbeddingModel.SMALL,
        main_domain="  Acme.COM ",
        created_at=datetime.now(timezone.utc),
    )

    assert client.main_domain == "acme.com"


def test_client_blank_main_domain_becomes_none() -> None:
    client = Client(
        id=str(uuid4()),
        name="Acme",
        embedding_model="text-embedding-3-large",
        main_domain="  ",
        created_at=datetime.now(timezone.utc),
    )

    assert client.main_domain is None
    assert client.embedding_model == EmbeddingModel.LARGE


def test_client_rejects_naive_datetime() -> None:
    with pytest.raises(ValidationError):
        Client(id=str(uuid4()), name="Acme", embedding_model=EmbeddingModel.SMALL, created_at=datetime.now())


def test_client_rejects_unknown_model() -> None:
    with pytest.raises(ValidationError):
        Client(
            id=str(uuid4()),
            name="Acme",
            embedding_model="text-embedding-ada-002",
            created_at=datetime.now(timezone.utc),
        )


def test_client_from_record_restores_utc() -> None:
    naive = datetime(2024, 5, 1, 12, 0)
    client = Client.from_record(
        {"id": str(uuid4()), "name": "Acme", "embedding_model": "text-embedding-3-small", "created_at": naive}
    )

    assert client.created_at.tzinfo == timezone.utc


@pytest.mark.parametrize(("model", "dimensions"), [(EmbeddingModel.SMALL, 1536), (EmbeddingModel.LARGE, 3072)])
def test_embedding_model_dimensions(model: EmbeddingModel, dimensions: int) -> None:
    assert model.dimensions == dimensions

import pytest

from restock_monitor import config, db
from restock_monitor.models import ExtractedProduct, ExtractedVariant, StockStatus


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "monitor.db")
    monkeypatch.setattr(config, "SQLITE_DB_PATH", path)
    monkeypatch.setattr(config, "RETRY_BACKOFF_SECONDS", 0)
    db.init_db(path)
    return path


@pytest.fixture
def make_product():
    """Build an ExtractedProduct from (attributes, price, status) tuples."""
    def _make(url="https://shop.example.com/products/tee", name="Basic Tee", variants=None, currency="USD"):
        if variants is None:
            variants = [({}, 29.99, StockStatus.IN_STOCK)]
        return ExtractedProduct(
            url=url,
            name=name,
            currency=currency,
            variants=[
                ExtractedVariant(attributes=dict(attrs), price=price, stock_status=status)
                for attrs, price, status in variants
            ],
            strategy="structured-data",
        )
    return _make

from restock_monitor import db
from restock_monitor.models import NotificationType, StockStatus, VariantSnapshot
from restock_monitor.notifications import detect_changes, variant_label
from restock_monitor.worker import persist

IN, OUT, UNKNOWN = StockStatus.IN_STOCK, StockStatus.OUT_OF_STOCK, StockStatus.UNKNOWN


def _snap(price, status):
    return VariantSnapshot(current_price=price, current_stock_status=status)


def test_first_observation_emits_nothing():
    assert detect_changes(1, None, _snap(10.0, IN), product_id=1) == []


def test_price_drop_message():
    found = detect_changes(7, _snap(29.99, IN), _snap(24.99, IN), product_id=3, label="Basic Tee (M)")
    assert len(found) == 1
    n = found[0]
    assert n.type is NotificationType.PRICE
    assert (n.old_price, n.new_price) == (29.99, 24.99)
    assert (n.product_id, n.variant_id) == (3, 7)
    assert n.message == "Basic Tee (M) price decreased by 16.7% from 29.99 to 24.99"


def test_unknown_price_is_not_a_price_change():
    assert detect_changes(1, _snap(None, IN), _snap(12.0, IN), product_id=1) == []
    assert detect_changes(1, _snap(12.0, IN), _snap(None, IN), product_id=1) == []


def test_back_in_stock_is_a_restock():
    for old in (OUT, UNKNOWN):
        found = detect_changes(1, _snap(10.0, old), _snap(10.0, IN), product_id=1)
        assert [n.type for n in found] == [NotificationType.RESTOCK]
        assert found[0].message.endswith("is back in stock!")


def test_other_status_changes_are_stock_notifications():
    found = detect_changes(1, _snap(10.0, IN), _snap(10.0, OUT), product_id=1)
    assert [n.type for n in found] == [NotificationType.STOCK]
    assert (found[0].old_status, found[0].new_status) == (IN, OUT)

    found = detect_changes(1, _snap(10.0, IN), _snap(10.0, UNKNOWN), product_id=1)
    assert [n.type for n in found] == [NotificationType.STOCK]


def test_price_and_stock_change_together():
    found = detect_changes(1, _snap(10.0, OUT), _snap(8.0, IN), product_id=1)
    assert sorted(n.type.value for n in found) == ["PRICE", "RESTOCK"]


def test_variant_label():
    assert variant_label("Tee") == "Tee"
    assert variant_label("Tee", {"size": "M", "color": "Red"}) == "Tee (M / Red)"


def test_pipeline_price_drop_notifies_once(db_path, make_product):
    persist(make_product(variants=[({"size": "M"}, 29.99, IN)]))
    result, created = persist(make_product(variants=[({"size": "M"}, 24.99, IN)]))
    _, again = persist(make_product(variants=[({"size": "M"}, 24.99, IN)]))

    assert [n.type for n in created] == [NotificationType.PRICE]
    assert again == []
    with db.connect(db_path) as conn:
        stored = db.list_notifications(conn, result.variants[0].id)
    assert len(stored) == 1
    assert stored[0].id == created[0].id
    assert (stored[0].old_price, stored[0].new_price) == (29.99, 24.99)
    assert stored[0].sent is False


def test_pipeline_restock_notifies(db_path, make_product):
    persist(make_product(variants=[({}, 50.0, OUT)]))
    _, created = persist(make_product(variants=[({}, 50.0, IN)]))
    assert [n.type for n in created] == [NotificationType.RESTOCK]

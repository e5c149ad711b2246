from restock_monitor.variants import (Axis, add_axis, attributes_key, combine,
                                      normalize_attribute_name, normalize_attributes)


def test_attribute_names_are_normalised():
    assert normalize_attribute_name("Colour") == "color"
    assert normalize_attribute_name("  Shoe Size: ") == "shoe_size"
    assert normalize_attributes({"Size ": " M ", "Colour": "Dark  Red", "empty": ""}) == {
        "size": "M",
        "color": "Dark Red",
    }


def test_attributes_key_ignores_order_and_value_case():
    a = attributes_key({"size": "M", "color": "Red"})
    b = attributes_key({"Color": "red", "Size": "m"})
    assert a == b
    assert a != attributes_key({"size": "L", "color": "Red"})


def test_add_axis_merges_and_dedupes_values():
    axes = []
    add_axis(axes, "Size", ["S", "M"])
    add_axis(axes, "size", ["m", "L"])
    add_axis(axes, "color", [])
    assert [(a.name, a.values) for a in axes] == [("size", ["S", "M", "L"])]


def test_combine_without_axes_yields_single_default_variant():
    assert combine([], 100) == ([{}], None)


def test_combine_is_cartesian_product_in_axis_order():
    axes = [Axis("size", ["S", "M"]), Axis("color", ["Red", "Blue"])]
    combos, note = combine(axes, 100)
    assert note is None
    assert combos == [
        {"size": "S", "color": "Red"},
        {"size": "S", "color": "Blue"},
        {"size": "M", "color": "Red"},
        {"size": "M", "color": "Blue"},
    ]


def test_combine_truncates_deterministically():
    axes = [
        Axis("size", [f"S{i}" for i in range(1, 13)]),
        Axis("color", [f"C{i}" for i in range(1, 13)]),
    ]
    first, note = combine(axes, 100)
    second, _ = combine(axes, 100)

    assert len(first) == 100
    assert note == "variants truncated: found 144, kept 100"
    assert first == second
    assert first[0] == {"size": "S1", "color": "C1"}
    assert first[-1] == {"size": "S9", "color": "C4"}

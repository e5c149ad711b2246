import json

import pytest

from restock_monitor.errors import ExtractionError, ExtractionErrorKind
from restock_monitor.extractor import extract, parse_availability, parse_price
from restock_monitor.models import StockStatus

URL = "https://shop.example.com/products/item"


def _ld(data):
    return f'<script type="application/ld+json">{json.dumps(data)}</script>'


def _by_attrs(product):
    return {tuple(sorted(v.attributes.items())): v for v in product.variants}


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,299.99", 1299.99),
        ("1.299,00 €", 1299.0),
        ("19,99", 19.99),
        ("1,299", 1299.0),
        (25, 25.0),
        ("From  $ 8.50", 8.5),
        (None, None),
        ("call us", None),
    ],
)
def test_parse_price(raw, expected):
    assert parse_price(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://schema.org/InStock", StockStatus.IN_STOCK),
        ("http://schema.org/OutOfStock", StockStatus.OUT_OF_STOCK),
        ("Currently unavailable", StockStatus.OUT_OF_STOCK),
        (True, StockStatus.IN_STOCK),
        (False, StockStatus.OUT_OF_STOCK),
        ("PreOrder", StockStatus.UNKNOWN),
        (None, StockStatus.UNKNOWN),
    ],
)
def test_parse_availability(raw, expected):
    assert parse_availability(raw) is expected


def test_json_ld_single_product():
    html = "<html><head><title>Trail Runner | Shop</title>" + _ld({
        "@context": "https://schema.org",
        "@type": "Product",
        "name": "Trail Runner",
        "image": ["//cdn.example.com/tr.jpg"],
        "brand": {"@type": "Brand", "name": "Acme"},
        "offers": {
            "@type": "Offer",
            "price": "129.00",
            "priceCurrency": "USD",
            "availability": "https://schema.org/InStock",
        },
    }) + "</head><body><h1>Trail Runner</h1></body></html>"

    product = extract(html, URL)

    assert product.strategy == "structured-data"
    assert product.name == "Trail Runner"
    assert product.vendor == "Acme"
    assert product.currency == "USD"
    assert product.main_image_url == "https://cdn.example.com/tr.jpg"
    assert len(product.variants) == 1
    only = product.variants[0]
    assert only.attributes == {}
    assert only.price == 129.0
    assert only.stock_status is StockStatus.IN_STOCK


def test_json_ld_product_with_page_size_picker():
    html = "<html><head>" + _ld({
        "@type": "Product",
        "name": "Trail Runner",
        "offers": {"price": 129, "availability": "InStock"},
    }) + """</head><body>
      <label for="size">Size</label>
      <select name="options[Size]" id="size">
        <option value="">Select size</option>
        <option>8</option>
        <option>9</option>
        <option disabled>10 - Sold out</option>
      </select>
    </body></html>"""

    product = extract(html, URL)
    variants = _by_attrs(product)

    assert set(variants) == {(("size", "8"),), (("size", "9"),), (("size", "10"),)}
    assert variants[(("size", "8"),)].stock_status is StockStatus.IN_STOCK
    assert variants[(("size", "10"),)].stock_status is StockStatus.OUT_OF_STOCK
    assert all(v.price == 129.0 for v in product.variants)
    assert "variant options read from page pickers" in product.notes


def test_json_ld_product_group_variants():
    html = "<html><head>" + _ld({
        "@context": "https://schema.org",
        "@type": "ProductGroup",
        "name": "Basic Tee",
        "variesBy": ["https://schema.org/color", "https://schema.org/size"],
        "hasVariant": [
            {"@type": "Product", "sku": "T-R-S", "color": "Red", "size": "S",
             "offers": {"@type": "Offer", "price": 19.99, "availability": "https://schema.org/InStock"}},
            {"@type": "Product", "sku": "T-R-M", "color": "Red", "size": "M",
             "offers": {"@type": "Offer", "price": 21.99, "availability": "https://schema.org/OutOfStock"}},
            {"@type": "Product", "sku": "T-B-S", "color": "Blue", "size": "S",
             "offers": {"@type": "Offer", "price": 19.99, "availability": "https://schema.org/InStock"}},
        ],
    }) + "</head><body></body></html>"

    product = extract(html, URL)
    variants = _by_attrs(product)

    assert product.name == "Basic Tee"
    assert len(product.variants) == 4
    red_m = variants[(("color", "Red"), ("size", "M"))]
    assert red_m.price == 21.99
    assert red_m.stock_status is StockStatus.OUT_OF_STOCK
    assert red_m.sku == "T-R-M"
    # not listed on the page: inherits the product-level offer
    blue_m = variants[(("color", "Blue"), ("size", "M"))]
    assert blue_m.price == 19.99
    assert blue_m.stock_status is StockStatus.IN_STOCK


def test_shopify_product_json():
    blob = {
        "id": 1,
        "title": "Wool Beanie",
        "vendor": "Knitco",
        "options": ["Color"],
        "price": 2500,
        "available": True,
        "featured_image": "//cdn.shopify.com/b.jpg",
        "variants": [
            {"id": 11, "option1": "Grey", "price": 2500, "available": True, "sku": "B-G"},
            {"id": 12, "option1": "Navy", "price": 2700, "available": False, "sku": "B-N"},
        ],
    }
    html = (
        "<html><body>"
        f'<script type="application/json" id="product-json">{json.dumps(blob)}</script>'
        "</body></html>"
    )

    product = extract(html, URL)
    variants = _by_attrs(product)

    assert product.name == "Wool Beanie"
    assert product.vendor == "Knitco"
    assert product.main_image_url == "https://cdn.shopify.com/b.jpg"
    assert variants[(("color", "Grey"),)].price == 25.0
    assert variants[(("color", "Grey"),)].stock_status is StockStatus.IN_STOCK
    assert variants[(("color", "Navy"),)].price == 27.0
    assert variants[(("color", "Navy"),)].stock_status is StockStatus.OUT_OF_STOCK


def test_integer_prices_outside_shopify_are_whole_units():
    blob = {"props": {"pageProps": {"product": {
        "title": "Trail Runner",
        "options": ["Size"],
        "variants": [
            {"option1": "9", "price": 30, "available": True},
            {"option1": "10", "price": 45, "available": False},
        ],
    }}}}
    html = (
        "<html><body>"
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(blob)}</script>'
        "</body></html>"
    )

    variants = _by_attrs(extract(html, URL))

    assert variants[(("size", "9"),)].price == 30.0
    assert variants[(("size", "10"),)].price == 45.0


def test_dom_fallback_skips_compare_at_price():
    html = """<html><head>
      <title>Desk Lamp - Lights Co</title>
      <meta property="og:title" content="Desk Lamp">
      <meta property="og:image" content="/img/lamp.jpg">
    </head><body>
      <h1>Desk Lamp</h1>
      <span class="price"><s class="price--compare">$59.00</s> <span class="price__current">$45.00</span></span>
      <button type="submit" name="add">Add to cart</button>
    </body></html>"""

    product = extract(html, URL)

    assert product.strategy == "dom-heuristics"
    assert product.name == "Desk Lamp"
    assert product.main_image_url == "https://shop.example.com/img/lamp.jpg"
    assert len(product.variants) == 1
    assert product.variants[0].price == 45.0
    assert product.variants[0].currency == "USD"
    assert product.variants[0].stock_status is StockStatus.IN_STOCK


def test_variant_cap_applies_to_page_pickers():
    sizes = "".join(f'<option value="S{i}">S{i}</option>' for i in range(1, 13))
    colors = "".join(f'<option value="C{i}">C{i}</option>' for i in range(1, 13))
    html = f"""<html><head>
      <meta property="product:price:amount" content="10.00">
    </head><body>
      <h1>Grid Sock</h1>
      <select name="size">{sizes}</select>
      <select name="color">{colors}</select>
    </body></html>"""

    first = extract(html, URL)
    second = extract(html, URL)

    assert len(first.variants) == 100
    assert "variants truncated: found 144, kept 100" in first.notes
    assert [v.attributes for v in first.variants] == [v.attributes for v in second.variants]
    assert first.variants[-1].attributes == {"size": "S9", "color": "C4"}


def test_non_product_page_raises_no_product_found():
    with pytest.raises(ExtractionError) as exc:
        extract("<html><body><p>Welcome to our blog</p></body></html>", URL)
    assert exc.value.kind is ExtractionErrorKind.NO_PRODUCT_FOUND


def test_empty_document_raises_no_product_found():
    with pytest.raises(ExtractionError) as exc:
        extract("   ", URL)
    assert exc.value.kind is ExtractionErrorKind.NO_PRODUCT_FOUND


def test_product_page_without_price_is_unsupported_layout():
    html = """<html><head>
      <meta property="og:type" content="product">
      <meta property="og:title" content="Mystery Box">
    </head><body><h1>Mystery Box</h1></body></html>"""

    with pytest.raises(ExtractionError) as exc:
        extract(html, URL)
    assert exc.value.kind is ExtractionErrorKind.UNSUPPORTED_LAYOUT

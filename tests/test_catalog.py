"""Tests for catalog listing: filtering, pagination, sorting and parameter validation."""

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from catalog import build_predicate, compile_query
from database import get_db
from main import app


def _names(response):
    return [p["name"] for p in response.json()["data"]["products"]]


class TestCatalogFiltering:
    def test_inactive_products_are_never_listed(self, client, make_product):
        make_product(name="Visible")
        make_product(name="Hidden", is_active=False)

        response = client.get("/api/products")
        assert response.status_code == 200
        assert _names(response) == ["Visible"]
        assert response.json()["data"]["pagination"]["total"] == 1

    def test_category_matches_membership(self, client, make_product):
        make_product(name="Shirt", categories=["men", "tops"])
        make_product(name="Dress", categories=["women"])

        response = client.get("/api/products", params={"category": "tops"})
        assert _names(response) == ["Shirt"]

    def test_search_is_case_insensitive_over_name_description_and_category(self, client, make_product):
        make_product(name="Linen Shirt")
        make_product(name="Scarf", description="Soft LINEN blend")
        make_product(name="Cap", categories=["linen-goods"])
        make_product(name="Boots")

        response = client.get("/api/products", params={"search": "linen", "sort": "name"})
        assert _names(response) == ["Cap", "Linen Shirt", "Scarf"]

    def test_search_treats_regex_characters_literally(self, client, make_product):
        make_product(name="C++ Mug")
        make_product(name="Cup")

        response = client.get("/api/products", params={"search": "c++"})
        assert _names(response) == ["C++ Mug"]

    def test_equal_min_and_max_price_returns_exact_matches(self, client, make_product):
        make_product(name="Cheap", price=10)
        make_product(name="Exact A", price=25)
        make_product(name="Exact B", price=25.0)
        make_product(name="Pricey", price=40)

        response = client.get("/api/products", params={"minPrice": "25", "maxPrice": "25", "sort": "name"})
        assert _names(response) == ["Exact A", "Exact B"]

    def test_price_bounds_are_inclusive(self, client, make_product):
        for price in (5, 10, 15, 20):
            make_product(name=f"P{price}", price=price)

        response = client.get("/api/products", params={"minPrice": "10", "maxPrice": "15", "sort": "price-low"})
        assert _names(response) == ["P10", "P15"]

    def test_featured_filter(self, client, make_product):
        make_product(name="Star", featured=True)
        make_product(name="Plain")

        response = client.get("/api/products", params={"featured": "true"})
        assert _names(response) == ["Star"]

    def test_categories_endpoint_lists_distinct_active_categories(self, client, make_product):
        make_product(name="A", categories=["tops", "men"])
        make_product(name="B", categories=["tops"])
        make_product(name="C", categories=["archived"], is_active=False)

        response = client.get("/api/products/categories")
        assert response.json()["data"] == ["men", "tops"]


class TestCatalogPagination:
    def test_total_counts_all_matches_not_just_the_page(self, client, make_product):
        for i in range(7):
            make_product(name=f"Tee {i}", categories=["tops"])
        make_product(name="Sock", categories=["socks"])

        for limit in ("1", "3", "5", "50"):
            response = client.get("/api/products", params={"category": "tops", "limit": limit})
            pagination = response.json()["data"]["pagination"]
            assert pagination["total"] == 7

    def test_page_metadata(self, client, make_product):
        for i in range(5):
            make_product(name=f"Item {i}")

        response = client.get("/api/products", params={"page": "2", "limit": "2"})
        data = response.json()["data"]
        assert len(data["products"]) == 2
        assert data["pagination"] == {
            "currentPage": 2,
            "limit": 2,
            "total": 5,
            "totalPages": 3,
            "hasNext": True,
            "hasPrev": True,
        }

    def test_page_past_the_end_is_an_empty_success(self, client, make_product):
        make_product(name="Only")

        response = client.get("/api/products", params={"page": "9"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["products"] == []
        assert body["data"]["pagination"]["hasNext"] is False

    def test_limit_above_maximum_is_clamped(self, client, make_product):
        make_product(name="One")

        response = client.get("/api/products", params={"limit": "5000"})
        assert response.status_code == 200
        assert response.json()["data"]["pagination"]["limit"] == 100

    def test_pages_do_not_overlap_when_sort_keys_tie(self, client, make_product):
        for i in range(6):
            make_product(name=f"Same {i}", price=10)

        seen = []
        for page in ("1", "2", "3"):
            response = client.get("/api/products", params={"sort": "price-low", "limit": "2", "page": page})
            seen.extend(_names(response))
        assert sorted(seen) == [f"Same {i}" for i in range(6)]
        assert seen == [f"Same {i}" for i in range(6)]


class TestCatalogSorting:
    @pytest.fixture()
    def catalogue(self, make_product):
        make_product(name="Bravo", price=30)
        make_product(name="Alpha", price=10)
        make_product(name="Charlie", price=20)

    def test_newest_first_by_default(self, client, catalogue):
        assert _names(client.get("/api/products")) == ["Charlie", "Alpha", "Bravo"]

    def test_price_low(self, client, catalogue):
        assert _names(client.get("/api/products", params={"sort": "price-low"})) == ["Alpha", "Charlie", "Bravo"]

    def test_price_high(self, client, catalogue):
        assert _names(client.get("/api/products", params={"sort": "price-high"})) == ["Bravo", "Charlie", "Alpha"]

    def test_name(self, client, catalogue):
        assert _names(client.get("/api/products", params={"sort": "name"})) == ["Alpha", "Bravo", "Charlie"]


class TestCatalogValidation:
    @pytest.mark.parametrize(
        "params, detail",
        [
            ({"minPrice": "abc"}, "minPrice: must be a number"),
            ({"maxPrice": "1O"}, "maxPrice: must be a number"),
            ({"minPrice": "-1"}, "minPrice: must be greater than or equal to 0"),
            ({"maxPrice": "nan"}, "maxPrice: must be a finite number"),
            ({"minPrice": "50", "maxPrice": "10"}, "minPrice: must not exceed maxPrice"),
            ({"page": "0"}, "page: must be greater than or equal to 1"),
            ({"page": str(10 ** 20)}, "page: too large"),
            ({"limit": "ten"}, "limit: must be an integer"),
            ({"featured": "yes"}, "featured: must be 'true' or 'false'"),
        ],
    )
    def test_malformed_parameters_are_rejected(self, client, make_product, params, detail):
        make_product(name="Anything")

        response = client.get("/api/products", params=params)
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert detail in body["data"]["details"]

    def test_largest_representable_page_is_an_empty_page(self, client, make_product):
        make_product(name="Anything")

        page = (2 ** 63 - 1) // 100 + 1
        response = client.get("/api/products", params={"page": str(page), "limit": "100"})
        assert response.status_code == 200
        assert response.json()["data"]["products"] == []

    def test_unknown_sort_is_rejected(self, client):
        response = client.get("/api/products", params={"sort": "random"})
        assert response.status_code == 400
        assert response.json()["data"]["details"][0].startswith("sort:")


class TestQueryCompilation:
    def test_predicate_always_restricts_to_active(self):
        assert build_predicate() == {"is_active": True}

    def test_admin_predicate_can_include_inactive(self):
        assert build_predicate(include_inactive=True) == {}

    def test_clauses_are_combined_with_and(self):
        predicate = build_predicate(category="tops", min_price=5, search="tee")
        assert predicate["$and"][0] == {"is_active": True}
        assert {"categories": "tops"} in predicate["$and"]
        assert {"price": {"$gte": 5}} in predicate["$and"]

    def test_compile_collects_every_error(self):
        query = compile_query({"page": "x", "minPrice": "y", "sort": "z"})
        assert len(query.errors) == 3


class TestProductLookup:
    def test_fetching_twice_returns_identical_data(self, client, make_product):
        product = make_product(name="Stable", categories=["a"], attributes=[{"name": "Color", "value": "Red"}])

        first = client.get(f"/api/products/{product['_id']}")
        second = client.get(f"/api/products/{product['_id']}")
        assert first.status_code == 200
        assert first.content == second.content

    def test_lookup_by_slug(self, client, make_product):
        make_product(name="Slugged", slug="slugged-tee")

        response = client.get("/api/products/slugged-tee")
        assert response.json()["data"]["name"] == "Slugged"

    def test_inactive_or_unknown_is_not_found(self, client, make_product):
        hidden = make_product(name="Hidden", is_active=False)

        assert client.get(f"/api/products/{hidden['_id']}").status_code == 404
        response = client.get("/api/products/000000000000000000000000")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Product not found", "data": None}


class _UnavailableDatabase:
    def __getitem__(self, name):
        raise ServerSelectionTimeoutError("no servers available")


def test_store_outage_is_reported_as_retryable():
    app.dependency_overrides[get_db] = lambda: _UnavailableDatabase()
    try:
        response = TestClient(app).get("/api/products")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["success"] is False

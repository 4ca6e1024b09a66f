"""Integration tests for product and category routes."""

from bson import ObjectId


def _create(client, headers, payload, **overrides):
    return client.post("/products", json={**payload, **overrides}, headers=headers)


class TestCreateProduct:
    def test_admin_creates_product(self, client, admin, product_payload):
        _, headers = admin
        response = _create(client, headers, product_payload)
        assert response.status_code == 201
        body = response.json()
        assert body["product_id"] == "TSHIRT-001"
        assert body["images"][0].endswith("tshirt-front.jpg")
        assert ObjectId.is_valid(body["id"])
        assert "created_at" in body

    def test_stored_document_gets_defaults(self, client, db, admin, product_payload):
        _, headers = admin
        payload = {k: v for k, v in product_payload.items() if k not in ("rating", "reviews", "features", "original_price")}
        _create(client, headers, payload)
        stored = db["product"].find_one({"product_id": "TSHIRT-001"})
        assert stored["rating"] == 0
        assert stored["reviews"] == 0
        assert stored["features"] == []
        assert stored["original_price"] is None

    def test_customers_cannot_create(self, client, user, product_payload):
        _, headers = user
        response = _create(client, headers, product_payload)
        assert response.status_code == 403
        assert response.json()["detail"] == "Admins only"

    def test_duplicate_product_id_is_conflict(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        response = _create(client, headers, product_payload, name="Another shirt")
        assert response.status_code == 409
        assert response.json()["detail"] == "Product ID already exists"

    def test_negative_price_is_validation_failure(self, client, admin, product_payload):
        _, headers = admin
        response = _create(client, headers, product_payload, price=-1)
        assert response.status_code == 400
        assert "price" in response.json()["errors"]

    def test_rating_out_of_range(self, client, admin, product_payload):
        _, headers = admin
        assert _create(client, headers, product_payload, rating=6).status_code == 400

    def test_blank_name(self, client, admin, product_payload):
        _, headers = admin
        response = _create(client, headers, product_payload, name="  ")
        assert response.status_code == 400
        assert "name" in response.json()["errors"]


class TestReadProducts:
    def test_list_returns_every_product(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        _create(client, headers, product_payload, product_id="MUG-001", name="Mug", category="kitchen")
        names = [p["name"] for p in client.get("/products").json()]
        assert sorted(names) == ["Cotton T-Shirt", "Mug"]

    def test_get_by_document_id_or_product_id(self, client, admin, product_payload):
        _, headers = admin
        created = _create(client, headers, product_payload).json()
        assert client.get(f"/products/{created['id']}").json()["name"] == "Cotton T-Shirt"
        assert client.get("/products/TSHIRT-001").json()["id"] == created["id"]

    def test_get_missing(self, client):
        assert client.get("/products/NOPE-404").status_code == 404
        assert client.get(f"/products/{ObjectId()}").status_code == 404


class TestUpdateProduct:
    def test_partial_update(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        response = client.put("/products/TSHIRT-001", json={"price": 399.0, "in_stock": False}, headers=headers)
        assert response.status_code == 200
        body = response.json()
        assert body["price"] == 399.0
        assert body["in_stock"] is False
        assert body["name"] == "Cotton T-Shirt"

    def test_empty_update(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        assert client.put("/products/TSHIRT-001", json={}, headers=headers).status_code == 400

    def test_negative_price(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        assert client.put("/products/TSHIRT-001", json={"price": -5}, headers=headers).status_code == 400

    def test_product_id_collision(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        _create(client, headers, product_payload, product_id="MUG-001")
        response = client.put("/products/MUG-001", json={"product_id": "TSHIRT-001"}, headers=headers)
        assert response.status_code == 409

    def test_blank_text_fields_are_rejected(self, client, db, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        response = client.put(
            "/products/TSHIRT-001",
            json={"product_id": "  ", "description": "", "category": " "},
            headers=headers,
        )
        assert response.status_code == 400
        assert set(response.json()["errors"]) == {"product_id", "description", "category"}
        assert db["product"].find_one({"product_id": "TSHIRT-001"}) is not None

    def test_update_missing(self, client, admin):
        _, headers = admin
        assert client.put("/products/NOPE", json={"price": 1}, headers=headers).status_code == 404


class TestDeleteProduct:
    def test_delete(self, client, admin, product_payload):
        _, headers = admin
        _create(client, headers, product_payload)
        response = client.delete("/products/TSHIRT-001", headers=headers)
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert client.get("/products/TSHIRT-001").status_code == 404

    def test_delete_missing(self, client, admin):
        _, headers = admin
        assert client.delete("/products/NOPE", headers=headers).status_code == 404


def test_categories_group_products(client, admin, product_payload):
    _, headers = admin
    _create(client, headers, product_payload)
    _create(client, headers, product_payload, product_id="TSHIRT-002", images=["https://img.example.com/v2.jpg"])
    _create(client, headers, product_payload, product_id="MUG-001", category="kitchen", images=["https://img.example.com/mug.jpg"])

    categories = client.get("/categories").json()
    assert [c["name"] for c in categories] == ["apparel", "kitchen"]
    assert categories[0]["product_count"] == 2
    assert categories[0]["image"] == "https://img.example.com/tshirt-front.jpg"
    assert categories[1]["image"] == "https://img.example.com/mug.jpg"

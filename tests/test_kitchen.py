import datetime as dt
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from kitchen_service import crud
from kitchen_service.main import app
from kitchen_service.ready_consumer import complete_order, cooking_seconds, handle_ingredient_ready, resume_cooking
from restaurant_common.messages import IngredientReady, IngredientRequest
from restaurant_common.models import IngredientRetry, Order, OrderEvent


@pytest.fixture
def client(db):
    crud.seed_recipes(db)
    return TestClient(app)


def _ready(order_id, ingredients):
    return IngredientReady(request_id=f"req-{order_id}", order_id=order_id, available_ingredients=ingredients)


def test_create_orders_requests_ingredients(client):
    with patch("kitchen_service.routers.order_router.publish_message") as publish:
        response = client.post("/orders/", json={"bulk": 3})

    assert response.status_code == 201
    order_ids = response.json()["order_ids"]
    assert len(order_ids) == 3

    sent = [c.args[0] for c in publish.call_args_list]
    assert [m.order_id for m in sent] == order_ids
    assert all(isinstance(m, IngredientRequest) for m in sent)
    assert len({m.request_id for m in sent}) == 3

    recipes = {tuple(sorted(ingredients.items())) for _, ingredients in crud.DEFAULT_RECIPES}
    for message in sent:
        order = client.get(f"/orders/{message.order_id}").json()
        assert order["status"] == "pending"
        assert order["required_ingredients"] == message.required_ingredients
        assert tuple(sorted(message.required_ingredients.items())) in recipes


def test_create_order_defaults_to_one(client):
    with patch("kitchen_service.routers.order_router.publish_message"):
        response = client.post("/orders/")

    assert response.status_code == 201
    assert len(response.json()["order_ids"]) == 1


def test_bulk_is_bounded(client):
    with patch("kitchen_service.routers.order_router.publish_message"):
        assert client.post("/orders/", json={"bulk": 0}).status_code == 422
        assert client.post("/orders/", json={"bulk": 101}).status_code == 422


def test_broker_outage_is_reported(client):
    with patch("kitchen_service.routers.order_router.publish_message", side_effect=ConnectionError("no broker")):
        response = client.post("/orders/")

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "broker_unavailable"


def test_order_events_and_summary(client):
    with patch("kitchen_service.routers.order_router.publish_message"):
        order_id = client.post("/orders/").json()["order_ids"][0]

    events = client.get(f"/orders/{order_id}/events").json()
    assert [e["event_type"] for e in events] == ["order_created"]

    summary = client.get("/orders/status-summary").json()
    assert summary == {"pending": 1, "waiting_ingredients": 0, "preparing": 0, "completed": 0, "cancelled": 0}

    assert client.get("/orders/", params={"status": "pending"}).json()[0]["id"] == order_id
    assert client.get("/orders/", params={"status": "completed"}).json() == []


def test_missing_order(client):
    assert client.get("/orders/999").status_code == 404
    assert client.get("/orders/999/events").status_code == 404


def test_recipes(client):
    recipes = client.get("/recipes/").json()
    assert len(recipes) == len(crud.DEFAULT_RECIPES)
    assert client.get(f"/recipes/{recipes[0]['id']}").json()["name"] == recipes[0]["name"]
    assert client.get("/recipes/999").status_code == 404


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "kitchen-service"}


def test_cooking_time_scales_with_ingredients():
    assert cooking_seconds({"tomato": 2, "cheese": 1}) == pytest.approx(0.6)
    assert cooking_seconds({"rice": 5}, ms_per_unit=1000) == 5


def test_ready_notification_starts_cooking_then_completes(make_order, order_status):
    order_id = make_order({"tomato": 2, "cheese": 1}, status="waiting_ingredients")
    start_timer = MagicMock()

    assert handle_ingredient_ready(_ready(order_id, {"tomato": 2, "cheese": 1}), start_timer=start_timer) is True

    assert order_status(order_id) == "preparing"
    start_timer.assert_called_once_with(order_id, pytest.approx(0.6))

    assert complete_order(order_id) is True
    assert order_status(order_id) == "completed"
    assert complete_order(order_id) is False


@pytest.mark.parametrize("status", ["preparing", "completed", "cancelled"])
def test_duplicate_or_late_ready_is_ignored(make_order, order_status, status):
    order_id = make_order({"rice": 1}, status=status)
    start_timer = MagicMock()

    assert handle_ingredient_ready(_ready(order_id, {"rice": 1}), start_timer=start_timer) is False

    start_timer.assert_not_called()
    assert order_status(order_id) == status


def test_ready_for_unknown_order(make_order):
    start_timer = MagicMock()
    assert handle_ingredient_ready(_ready(12345, {"rice": 1}), start_timer=start_timer) is False
    start_timer.assert_not_called()


def test_ready_consumer_rejects_requests():
    request = IngredientRequest(request_id="r", order_id=1, required_ingredients={"rice": 1})
    with pytest.raises(TypeError):
        handle_ingredient_ready(request, start_timer=MagicMock())


def test_resume_cooking_restarts_timers(make_order):
    preparing = make_order({"rice": 2}, status="preparing")
    make_order({"rice": 2}, status="pending")
    start_timer = MagicMock()

    assert resume_cooking(start_timer=start_timer) == 1
    start_timer.assert_called_once_with(preparing, pytest.approx(0.4))


def test_resume_cooking_covers_every_preparing_order(make_order):
    preparing = [make_order({"rice": 1}, status="preparing") for _ in range(120)]
    start_timer = MagicMock()

    assert resume_cooking(start_timer=start_timer) == 120
    assert sorted(c.args[0] for c in start_timer.call_args_list) == preparing


def test_create_recipe(client):
    response = client.post("/recipes/", json={"name": "  Sopa de Tomate ", "ingredients": {"tomato": 3, "onion": 1}})

    assert response.status_code == 201
    created = response.json()
    assert (created["name"], created["ingredients"]) == ("Sopa de Tomate", {"tomato": 3, "onion": 1})
    assert client.get(f"/recipes/{created['id']}").json()["name"] == "Sopa de Tomate"


def test_create_recipe_validation(client):
    existing = "Plato Criollo"

    assert client.post("/recipes/", json={"name": existing.upper(), "ingredients": {"rice": 1}}).status_code == 409
    unknown = client.post("/recipes/", json={"name": "Pizza", "ingredients": {"pineapple": 1}})
    assert unknown.status_code == 400
    assert unknown.json()["detail"]["ingredient"] == "pineapple"
    assert client.post("/recipes/", json={"name": "Pizza", "ingredients": {}}).status_code == 422
    assert client.post("/recipes/", json={"name": "Pizza", "ingredients": {"rice": 0}}).status_code == 422
    assert client.post("/recipes/", json={"name": "   ", "ingredients": {"rice": 1}}).status_code == 400


def test_update_recipe(client):
    first, second = client.get("/recipes/").json()[:2]

    response = client.put(f"/recipes/{first['id']}", json={"name": "Arroz Simple", "ingredients": {"rice": 2}})
    assert response.status_code == 200
    assert response.json()["ingredients"] == {"rice": 2}

    # keeping its own name is fine, taking another recipe's is not
    assert client.put(f"/recipes/{first['id']}", json={"name": "arroz simple", "ingredients": {"rice": 1}}).status_code == 200
    assert client.put(f"/recipes/{first['id']}", json={"name": second["name"], "ingredients": {"rice": 1}}).status_code == 409
    assert client.put("/recipes/999", json={"name": "X", "ingredients": {"rice": 1}}).status_code == 404


def test_delete_recipe(client, db):
    recipe = crud.create_recipe(db, "Limonada", {"lemon": 2})

    response = client.delete(f"/recipes/{recipe.id}")
    assert response.status_code == 200
    assert response.json()["deleted_recipe"]["name"] == "Limonada"
    assert client.get(f"/recipes/{recipe.id}").status_code == 404
    assert client.delete(f"/recipes/{recipe.id}").status_code == 404


def test_recipe_with_orders_cannot_be_deleted(client, db):
    recipe = crud.create_recipe(db, "Papas Fritas", {"potato": 2, "ketchup": 1})
    crud.create_order(db, recipe)

    response = client.delete(f"/recipes/{recipe.id}")
    assert response.status_code == 409
    assert response.json()["detail"] == {"error": "recipe_in_use", "orders_count": 1}


def test_ingredients(client):
    ingredients = client.get("/ingredients/").json()["ingredients"]
    assert "tomato" in ingredients
    assert len(ingredients) == 10


def _order_on(db, when, status="pending", recipe=None):
    order = Order(
        recipe_id=recipe.id if recipe else None,
        required_ingredients={"rice": 1},
        status=status,
        created_at=when,
    )
    db.add(order)
    db.commit()
    return order.id


def test_orders_by_date(client, db):
    recipe = crud.get_recipes(db)[0]
    morning = _order_on(db, dt.datetime(2026, 3, 1, 9, 0), recipe=recipe)
    night = _order_on(db, dt.datetime(2026, 3, 1, 23, 30), status="completed", recipe=recipe)
    _order_on(db, dt.datetime(2026, 3, 2, 0, 15))

    summary = client.get("/orders/by-date/2026-03-01").json()

    assert summary["date"] == "2026-03-01"
    assert summary["total_orders"] == 2
    assert summary["orders_by_status"]["pending"] == 1
    assert summary["orders_by_status"]["completed"] == 1
    assert [o["id"] for o in summary["orders"]] == [night, morning]
    assert summary["orders"][0]["recipe_name"] == recipe.name

    assert client.get("/orders/by-date/2026-03-05").json()["total_orders"] == 0
    assert client.get("/orders/by-date/yesterday").status_code == 422


def test_available_order_dates(client, db):
    _order_on(db, dt.datetime(2026, 3, 1, 9, 0))
    _order_on(db, dt.datetime(2026, 3, 1, 12, 0))
    _order_on(db, dt.datetime(2026, 3, 3, 8, 0))

    assert client.get("/orders/available-dates").json() == [
        {"date": "2026-03-03", "order_count": 1},
        {"date": "2026-03-01", "order_count": 2},
    ]


def test_reset_orders(client, db):
    with patch("kitchen_service.routers.order_router.publish_message"):
        order_ids = client.post("/orders/", json={"bulk": 2}).json()["order_ids"]
    db.add(IngredientRetry(order_id=order_ids[0], request_id="r", required_ingredients={"rice": 1}, attempts=1))
    db.commit()

    assert client.request("DELETE", "/orders/reset", json={"confirm": "please"}).status_code == 400

    response = client.request("DELETE", "/orders/reset", json={"confirm": "RESET_ALL_DATA"})
    assert response.status_code == 200
    assert response.json()["deleted"] == 2
    assert db.query(Order).count() == 0
    assert db.query(OrderEvent).count() == 0
    assert db.query(IngredientRetry).count() == 0


def test_reset_orders_by_date_range(client, db):
    _order_on(db, dt.datetime(2026, 3, 1, 9, 0))
    _order_on(db, dt.datetime(2026, 3, 2, 23, 59))
    kept = _order_on(db, dt.datetime(2026, 3, 3, 0, 1))
    body = {"start_date": "2026-03-01", "end_date": "2026-03-02", "confirm": "DELETE_DATE_RANGE"}

    assert client.request("DELETE", "/orders/reset/date-range", json={**body, "confirm": "x"}).status_code == 400
    backwards = {**body, "start_date": "2026-03-04"}
    assert client.request("DELETE", "/orders/reset/date-range", json=backwards).status_code == 400

    response = client.request("DELETE", "/orders/reset/date-range", json=body)
    assert response.status_code == 200
    assert response.json()["deleted"] == 2
    assert [o.id for o in db.query(Order).all()] == [kept]

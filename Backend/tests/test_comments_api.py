"""
Comment and reply workflow tests.

Covers comment dedupe (per shop, per booking), reply moderation states,
visibility for public vs staff readers, and the edit history trail.

Run with: pytest Backend/tests/test_comments_api.py -v
"""

import uuid
from datetime import time
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from kuaforun.comments import CommentCreateRequest, create_comment
from kuaforun.core.db import get_session
from kuaforun.core.errors import DuplicateError
from kuaforun.main import create_app
from kuaforun.models import Booking, Comment, CommentReply, ReplyHistory

from conftest import FUTURE_DAY, auth_headers

CUSTOMER = uuid.uuid4()
OTHER_CUSTOMER = uuid.uuid4()
BARBER = uuid.uuid4()
MANAGER = uuid.uuid4()


def comment_payload(shop, rating=5, description="Great fade", booking=None):
    payload = {"barberShopId": str(shop.id), "rating": rating, "description": description}
    if booking is not None:
        payload["bookingId"] = str(booking.id)
    return payload


async def make_booking(session, shop, customer_id, start=time(10, 0)):
    booking = Booking(
        tenant_id=shop.tenant_id,
        customer_id=customer_id,
        shop_id=shop.id,
        booking_date=FUTURE_DAY,
        start_time=start,
        end_time=time(start.hour, 30),
        total_price=Decimal("25.00"),
    )
    session.add(booking)
    await session.commit()
    return booking


async def post_comment(client, shop, user_id=CUSTOMER, **kwargs):
    return await client.post(
        "/comments", json=comment_payload(shop, **kwargs), headers=auth_headers(user_id, "customer")
    )


async def post_reply(client, comment_id, text, user_id=BARBER, role="barber"):
    return await client.post(
        f"/comments/{comment_id}/reply", json={"text": text}, headers=auth_headers(user_id, role)
    )


# ────────────────────────────────────────────────────────────────
# Comment creation and dedupe
# ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_comment(client, factory):
    shop = await factory.shop()
    response = await post_comment(client, shop)
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["rating"] == 5
    assert data["userId"] == str(CUSTOMER)
    assert data["bookingId"] is None


@pytest.mark.asyncio
async def test_second_comment_on_same_shop_is_duplicate(client, factory):
    shop = await factory.shop()
    assert (await post_comment(client, shop)).status_code == 201

    again = await post_comment(client, shop, description="Still great")
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_EXISTS"

    other_user = await post_comment(client, shop, user_id=OTHER_CUSTOMER)
    assert other_user.status_code == 201


@pytest.mark.asyncio
async def test_comment_requires_identity(client, factory):
    shop = await factory.shop()
    response = await client.post("/comments", json=comment_payload(shop))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_comment_with_malformed_identity_is_401(client, factory):
    shop = await factory.shop()
    response = await client.post(
        "/comments", json=comment_payload(shop), headers={"X-User-Id": "not-a-uuid"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize("rating", [0, 6])
async def test_rating_out_of_range(client, factory, rating):
    shop = await factory.shop()
    response = await post_comment(client, shop, rating=rating)
    assert response.status_code == 400
    assert "rating" in response.json()["details"]


@pytest.mark.asyncio
async def test_unknown_role_is_rejected(client, factory):
    shop = await factory.shop()
    response = await client.post(
        "/comments", json=comment_payload(shop), headers=auth_headers(CUSTOMER, "superuser")
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_booking_scoped_dedupe(client, factory, async_session):
    shop = await factory.shop()
    first_visit = await make_booking(async_session, shop, CUSTOMER, time(10, 0))
    second_visit = await make_booking(async_session, shop, CUSTOMER, time(11, 0))

    assert (await post_comment(client, shop, booking=first_visit)).status_code == 201

    duplicate = await post_comment(client, shop, booking=first_visit)
    assert duplicate.status_code == 409

    # A different booking at the same shop is a separate review
    assert (await post_comment(client, shop, booking=second_visit)).status_code == 201


@pytest.mark.asyncio
async def test_booking_must_belong_to_user_and_shop(client, factory, async_session):
    shop = await factory.shop()
    other_shop = await factory.shop(name="Across The Street")
    someone_elses = await make_booking(async_session, shop, OTHER_CUSTOMER)
    wrong_shop = await make_booking(async_session, other_shop, CUSTOMER)

    response = await post_comment(client, shop, booking=someone_elses)
    assert response.status_code == 400

    response = await post_comment(client, shop, booking=wrong_shop)
    assert response.status_code == 400

    response = await client.post(
        "/comments",
        json={**comment_payload(shop), "bookingId": str(uuid.uuid4())},
        headers=auth_headers(CUSTOMER, "customer"),
    )
    assert response.status_code == 400


@pytest.fixture
async def legacy_client(settings, session_factory):
    """Client for a database whose comment table has no booking column."""
    app = create_app(settings.model_copy(update={"comment_booking_scope": False}))

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    await app.state.engine.dispose()


@pytest.mark.asyncio
async def test_without_booking_scope_dedupe_is_per_shop(legacy_client, factory, async_session):
    shop = await factory.shop()
    first_visit = await make_booking(async_session, shop, CUSTOMER, time(10, 0))
    second_visit = await make_booking(async_session, shop, CUSTOMER, time(11, 0))

    created = await post_comment(legacy_client, shop, booking=first_visit)
    assert created.status_code == 201
    assert created.json()["data"]["bookingId"] is None

    again = await post_comment(legacy_client, shop, booking=second_visit)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_without_booking_scope_booking_must_still_be_the_users(legacy_client, factory, async_session):
    shop = await factory.shop()
    elsewhere = await factory.shop(name="Elsewhere")
    someone_elses = await make_booking(async_session, elsewhere, OTHER_CUSTOMER)

    response = await post_comment(legacy_client, shop, booking=someone_elses)
    assert response.status_code == 400
    assert response.json()["details"] == {"bookingId": str(someone_elses.id)}

    count = await async_session.scalar(select(func.count()).select_from(Comment))
    assert count == 0


@pytest.mark.asyncio
async def test_database_rejects_second_shop_comment(factory, async_session):
    shop = await factory.shop()
    tenant_id, shop_id = shop.tenant_id, shop.id
    for _ in range(2):
        async_session.add(
            Comment(tenant_id=tenant_id, shop_id=shop_id, user_id=CUSTOMER, rating=5, description="Nice")
        )
    with pytest.raises(IntegrityError):
        await async_session.commit()
    await async_session.rollback()

    # Same user may still comment once per booking alongside the shop comment
    await async_session.refresh(shop)
    booking = await make_booking(async_session, shop, CUSTOMER)
    async_session.add(
        Comment(tenant_id=tenant_id, shop_id=shop_id, user_id=CUSTOMER, rating=5, description="Nice")
    )
    async_session.add(
        Comment(
            tenant_id=tenant_id,
            shop_id=shop_id,
            user_id=CUSTOMER,
            booking_id=booking.id,
            rating=4,
            description="Good visit",
        )
    )
    await async_session.commit()


@pytest.mark.asyncio
async def test_duplicate_caught_at_commit_is_409(factory, async_session, monkeypatch):
    shop = await factory.shop()
    async_session.add(
        Comment(tenant_id=shop.tenant_id, shop_id=shop.id, user_id=CUSTOMER, rating=5, description="First")
    )
    await async_session.commit()

    async def nothing_found(*args, **kwargs):
        return None

    # Simulates a concurrent post that passed the lookup before the first one committed
    monkeypatch.setattr("kuaforun.comments.find_duplicate_comment", nothing_found)
    payload = CommentCreateRequest.model_validate(comment_payload(shop, description="Second"))
    with pytest.raises(DuplicateError) as exc_info:
        await create_comment(async_session, shop.tenant_id, payload, CUSTOMER)
    assert exc_info.value.status_code == 409

    count = await async_session.scalar(select(func.count()).select_from(Comment))
    assert count == 1


# ────────────────────────────────────────────────────────────────
# Comment update / delete
# ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_author_can_edit_and_delete(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]

    stranger = await client.patch(
        f"/comments/{comment_id}", json={"rating": 1}, headers=auth_headers(OTHER_CUSTOMER, "customer")
    )
    assert stranger.status_code == 403

    edited = await client.patch(
        f"/comments/{comment_id}",
        json={"rating": 4, "description": "Good, a bit slow"},
        headers=auth_headers(CUSTOMER, "customer"),
    )
    assert edited.status_code == 200
    assert edited.json()["data"]["rating"] == 4

    deleted = await client.delete(f"/comments/{comment_id}", headers=auth_headers(CUSTOMER, "customer"))
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"ok": True}

    gone = await client.get(f"/comments/{comment_id}")
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_list_comments_by_shop(client, factory):
    shop = await factory.shop()
    other_shop = await factory.shop(name="Elsewhere")
    await post_comment(client, shop)
    await post_comment(client, other_shop)

    response = await client.get(f"/comments?shopId={shop.id}")
    assert response.status_code == 200
    assert [c["shopId"] for c in response.json()["data"]] == [str(shop.id)]


# ────────────────────────────────────────────────────────────────
# Replies and moderation
# ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_only_reply_author_roles_can_reply(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]

    response = await post_reply(client, comment_id, "Thanks!", user_id=CUSTOMER, role="customer")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_reply_on_missing_comment_is_404(client):
    response = await post_reply(client, uuid.uuid4(), "Thanks!")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_full_moderation_cycle(client, factory, async_session):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]

    created = await post_reply(client, comment_id, "Thanks for visiting")
    assert created.status_code == 201
    reply = created.json()["data"]
    assert reply["status"] == "pending"

    # Pending replies are hidden from the public but visible to staff
    public = await client.get(f"/comments/{comment_id}/reply")
    assert public.json()["data"] is None
    staff_view = await client.get(f"/comments/{comment_id}/reply", headers=auth_headers(BARBER, "barber"))
    assert staff_view.json()["data"]["status"] == "pending"

    approved = await client.post(
        f"/comments/replies/{reply['id']}/moderate",
        json={"status": "approved"},
        headers=auth_headers(MANAGER, "manager"),
    )
    assert approved.status_code == 200
    assert approved.json()["data"]["moderatorUserId"] == str(MANAGER)

    public = await client.get(f"/comments/{comment_id}/reply", headers=auth_headers(CUSTOMER, "customer"))
    assert public.json()["data"]["text"] == "Thanks for visiting"
    assert "status" not in public.json()["data"]

    # Editing an approved reply sends it back to pending and records the old text
    edited = await post_reply(client, comment_id, "Thanks, see you soon")
    assert edited.status_code == 200
    assert edited.json()["data"]["status"] == "pending"
    assert edited.json()["data"]["id"] == reply["id"]

    public = await client.get(f"/comments/{comment_id}/reply")
    assert public.json()["data"] is None

    history = await client.get(
        f"/comments/{comment_id}/reply/history", headers=auth_headers(MANAGER, "manager")
    )
    assert history.status_code == 200
    entries = history.json()["data"]
    assert len(entries) == 1
    assert entries[0]["previousText"] == "Thanks for visiting"
    assert entries[0]["editedByUserId"] == str(BARBER)

    count = await async_session.execute(
        select(func.count(ReplyHistory.id)).where(ReplyHistory.reply_id == uuid.UUID(reply["id"]))
    )
    assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_history_newest_first(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]
    for text in ("v1", "v2", "v3"):
        await post_reply(client, comment_id, text)

    history = await client.get(
        f"/comments/{comment_id}/reply/history", headers=auth_headers(BARBER, "barber")
    )
    assert [h["previousText"] for h in history.json()["data"]] == ["v2", "v1"]


@pytest.mark.asyncio
async def test_history_is_staff_only(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]

    anonymous = await client.get(f"/comments/{comment_id}/reply/history")
    assert anonymous.status_code == 403

    customer = await client.get(
        f"/comments/{comment_id}/reply/history", headers=auth_headers(CUSTOMER, "customer")
    )
    assert customer.status_code == 403

    empty = await client.get(f"/comments/{comment_id}/reply/history", headers=auth_headers(BARBER, "barber"))
    assert empty.status_code == 200
    assert empty.json()["data"] == []


@pytest.mark.asyncio
async def test_rejected_reply_hidden_from_public(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]
    reply_id = (await post_reply(client, comment_id, "Rude reply")).json()["data"]["id"]

    rejected = await client.post(
        f"/comments/replies/{reply_id}/moderate",
        json={"status": "rejected", "reason": "Unprofessional"},
        headers=auth_headers(MANAGER, "owner"),
    )
    assert rejected.status_code == 200
    assert rejected.json()["data"]["reason"] == "Unprofessional"

    for headers in ({}, auth_headers(CUSTOMER, "customer"), auth_headers(uuid.uuid4(), "admin")):
        response = await client.get(f"/comments/{comment_id}/reply", headers=headers)
        assert response.json()["data"] is None

    owner_view = await client.get(f"/comments/{comment_id}/reply", headers=auth_headers(MANAGER, "owner"))
    assert owner_view.json()["data"]["status"] == "rejected"


@pytest.mark.asyncio
async def test_moderation_permissions(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]
    reply_id = (await post_reply(client, comment_id, "Thanks")).json()["data"]["id"]
    url = f"/comments/replies/{reply_id}/moderate"

    assert (await client.post(url, json={"status": "approved"})).status_code == 401
    barber = await client.post(url, json={"status": "approved"}, headers=auth_headers(BARBER, "barber"))
    assert barber.status_code == 403

    missing = await client.post(
        f"/comments/replies/{uuid.uuid4()}/moderate",
        json={"status": "approved"},
        headers=auth_headers(MANAGER, "manager"),
    )
    assert missing.status_code == 404

    bad_state = await client.post(url, json={"status": "published"}, headers=auth_headers(MANAGER, "manager"))
    assert bad_state.status_code == 400


@pytest.mark.asyncio
async def test_reply_without_moderation_row_counts_as_approved(client, factory, async_session):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]
    async_session.add(CommentReply(comment_id=uuid.UUID(comment_id), user_id=BARBER, text="Legacy reply"))
    await async_session.commit()

    public = await client.get(f"/comments/{comment_id}/reply")
    assert public.json()["data"]["text"] == "Legacy reply"

    staff_view = await client.get(f"/comments/{comment_id}/reply", headers=auth_headers(BARBER, "barber"))
    assert staff_view.json()["data"]["status"] == "approved"


@pytest.mark.asyncio
async def test_no_reply_yet(client, factory):
    shop = await factory.shop()
    comment_id = (await post_comment(client, shop)).json()["data"]["id"]
    response = await client.get(f"/comments/{comment_id}/reply")
    assert response.status_code == 200
    assert response.json()["data"] is None

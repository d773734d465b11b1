"""
Tests for chats, messages, receipts and realtime fan-out.

Realtime sessions are registered straight into the presence registry;
the recording transport captures what each session would receive.

Tests cover:
- Private, group and self chats
- Send pipeline: initial status, new_message / chat_list_update targets
- Receipts: status updates, mark-as-read, no downgrades
- Delete for me / for everyone
- Push notifications and invalid token pruning
- Access errors
"""

import pytest


def create_private_chat(client, headers, email):
    response = client.post("/api/chats/single/create", headers=headers, json={"email": email})
    assert response.status_code == 200
    return response.json()["chatId"]


def send(client, headers, chat_id, **body):
    response = client.post(f"/api/chats/{chat_id}/messages", headers=headers, json=body)
    assert response.status_code == 201, response.text
    return response.json()["message"]


def history(client, headers, chat_id):
    response = client.get(f"/api/chats/{chat_id}/messages", headers=headers)
    assert response.status_code == 200
    return response.json()["messages"]


@pytest.fixture
def pair(client, login, services):
    """Alice and Bob with a private chat and one realtime session each."""
    alice_id, alice = login("alice@example.com")
    bob_id, bob = login("bob@example.com")
    chat_id = create_private_chat(client, alice, "bob@example.com")
    services.presence.register("alice-phone", alice_id)
    services.presence.register("bob-phone", bob_id)
    return {
        "chat_id": chat_id,
        "alice_id": alice_id, "alice": alice,
        "bob_id": bob_id, "bob": bob,
    }


@pytest.fixture
def group(client, login, services):
    """Three-member group; Alice has two devices."""
    alice_id, alice = login("alice@example.com")
    bob_id, bob = login("bob@example.com")
    carol_id, carol = login("carol@example.com")
    response = client.post("/api/chats/group/create", headers=alice, json={
        "groupName": "Team",
        "memberEmails": ["bob@example.com", "Carol@Example.com"],
    })
    assert response.status_code == 201
    for sid, uid in (("alice-phone", alice_id), ("alice-laptop", alice_id),
                     ("bob-phone", bob_id), ("carol-phone", carol_id)):
        services.presence.register(sid, uid)
    return {
        "chat_id": response.json()["chatId"],
        "alice_id": alice_id, "alice": alice,
        "bob_id": bob_id, "bob": bob,
        "carol_id": carol_id, "carol": carol,
    }


class TestPrivateChat:
    def test_single_create_is_idempotent(self, client, login):
        _, alice = login("alice@example.com")
        login("bob@example.com")

        first = create_private_chat(client, alice, "bob@example.com")
        second = create_private_chat(client, alice, "BOB@example.com")

        assert first == second

    def test_single_create_unknown_email_404(self, client, login):
        _, alice = login("alice@example.com")

        response = client.post("/api/chats/single/create", headers=alice, json={"email": "nobody@example.com"})

        assert response.status_code == 404

    def test_cannot_chat_with_self_by_email(self, client, login):
        _, alice = login("alice@example.com")

        response = client.post("/api/chats/single/create", headers=alice, json={"email": "alice@example.com"})

        assert response.status_code == 404

    def test_hi_is_delivered_then_read(self, client, services, pair):
        """Alice sends "hi"; it shows delivered until Bob reads the chat."""
        transport = services.router.transport

        message = send(client, pair["alice"], pair["chat_id"], text="hi")

        assert message["status"] == "delivered"
        assert message["isSent"] is True
        assert message["senderId"] == pair["alice_id"]

        response = client.post(f"/api/chats/{pair['chat_id']}/read", headers=pair["bob"])
        assert response.status_code == 200
        assert response.json()["markedCount"] == 1

        assert transport.to("alice-phone", "message_status_update") == [
            {"messageId": message["id"], "status": "read", "chatId": str(pair["chat_id"])}
        ]
        assert history(client, pair["alice"], pair["chat_id"])[0]["status"] == "read"

    def test_send_fans_out_to_recipient_only(self, client, services, pair):
        transport = services.router.transport

        message = send(client, pair["alice"], pair["chat_id"], text="hi")

        new_messages = transport.to("bob-phone", "new_message")
        assert len(new_messages) == 1
        event = new_messages[0]
        assert event["id"] == message["id"]
        assert event["text"] == "hi"
        assert event["isSent"] is False
        assert event["status"] == "delivered"
        assert event["senderId"] == pair["alice_id"]
        assert event["senderName"] == "alice"
        assert event["chatId"] == str(pair["chat_id"])
        assert event["replyTo"] is None

        assert transport.to("bob-phone", "chat_list_update")[-1]["unreadCount"] == 1
        assert transport.to("alice-phone", "new_message") == []
        sender_update = transport.to("alice-phone", "chat_list_update")[-1]
        assert sender_update["senderName"] == "You"
        assert sender_update["unreadCount"] == 0
        assert sender_update["lastMessage"] == "hi"

    def test_recipient_unread_count_is_fresh(self, client, services, pair):
        transport = services.router.transport

        send(client, pair["alice"], pair["chat_id"], text="one")
        send(client, pair["alice"], pair["chat_id"], text="two")

        counts = [p["unreadCount"] for p in transport.to("bob-phone", "chat_list_update")]
        assert counts == [1, 2]

    def test_read_clears_reader_badge(self, client, services, pair):
        transport = services.router.transport
        send(client, pair["alice"], pair["chat_id"], text="hi")

        client.post(f"/api/chats/{pair['chat_id']}/read", headers=pair["bob"])

        assert transport.to("bob-phone", "chat_list_update")[-1]["unreadCount"] == 0

    def test_read_twice_marks_nothing_second_time(self, client, pair):
        send(client, pair["alice"], pair["chat_id"], text="hi")
        client.post(f"/api/chats/{pair['chat_id']}/read", headers=pair["bob"])

        response = client.post(f"/api/chats/{pair['chat_id']}/read", headers=pair["bob"])

        assert response.json()["markedCount"] == 0

    def test_recipient_history_statuses(self, client, pair):
        send(client, pair["alice"], pair["chat_id"], text="hi")

        messages = history(client, pair["bob"], pair["chat_id"])

        assert len(messages) == 1
        assert messages[0]["isSent"] is False
        assert messages[0]["status"] == "delivered"

    def test_details_title_is_other_user(self, client, pair):
        response = client.get(f"/api/chats/{pair['chat_id']}", headers=pair["alice"])

        assert response.status_code == 200
        chat = response.json()["chat"]
        assert chat["type"] == "private"
        assert chat["title"] == "bob@example.com"
        assert chat["memberCount"] == 2
        assert chat["otherUser"]["id"] == pair["bob_id"]


class TestStatusUpdates:
    def test_patch_read_notifies_sender(self, client, services, pair):
        transport = services.router.transport
        message = send(client, pair["alice"], pair["chat_id"], text="hi")

        response = client.patch(
            f"/api/chats/messages/{message['id']}/status", headers=pair["bob"], json={"status": "read"}
        )

        assert response.status_code == 200
        assert transport.to("alice-phone", "message_status_update")[-1]["status"] == "read"

    def test_downgrade_ignored(self, client, services, pair):
        transport = services.router.transport
        message = send(client, pair["alice"], pair["chat_id"], text="hi")
        client.patch(f"/api/chats/messages/{message['id']}/status", headers=pair["bob"], json={"status": "read"})
        events_before = len(transport.to("alice-phone", "message_status_update"))

        response = client.patch(
            f"/api/chats/messages/{message['id']}/status", headers=pair["bob"], json={"status": "delivered"}
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Status unchanged"
        assert len(transport.to("alice-phone", "message_status_update")) == events_before
        assert history(client, pair["bob"], pair["chat_id"])[0]["status"] == "read"

    def test_invalid_status_is_422(self, client, pair):
        message = send(client, pair["alice"], pair["chat_id"], text="hi")

        response = client.patch(
            f"/api/chats/messages/{message['id']}/status", headers=pair["bob"], json={"status": "seen"}
        )

        assert response.status_code == 422

    def test_unknown_message_is_404(self, client, pair):
        response = client.patch("/api/chats/messages/999/status", headers=pair["bob"], json={"status": "read"})

        assert response.status_code == 404


class TestGroupChat:
    def test_create_reports_failed_members(self, client, login):
        _, alice = login("alice@example.com")
        login("bob@example.com")

        response = client.post("/api/chats/group/create", headers=alice, json={
            "groupName": "Team",
            "memberEmails": ["bob@example.com", "ghost@example.com", "alice@example.com"],
        })

        body = response.json()
        assert response.status_code == 201
        assert [m["email"] for m in body["addedMembers"]] == ["bob@example.com"]
        assert body["failedMembers"] == ["ghost@example.com"]

    def test_members_admin_first(self, client, group):
        response = client.get(f"/api/chats/{group['chat_id']}/members", headers=group["bob"])

        members = response.json()["members"]
        assert len(members) == 3
        assert members[0]["userId"] == group["alice_id"]
        assert members[0]["role"] == "admin"
        assert {m["role"] for m in members[1:]} == {"member"}

    def test_new_message_reaches_each_other_member_once(self, client, services, group):
        transport = services.router.transport

        message = send(client, group["alice"], group["chat_id"], text="hello team")

        assert message["status"] == "delivered"
        assert len(transport.to("bob-phone", "new_message")) == 1
        assert len(transport.to("carol-phone", "new_message")) == 1
        assert transport.to("alice-phone", "new_message") == []
        assert transport.to("alice-laptop", "new_message") == []
        assert transport.to("alice-laptop", "chat_list_update")[-1]["senderName"] == "You"

    def test_aggregate_read_only_when_everyone_read(self, client, services, group):
        transport = services.router.transport
        send(client, group["alice"], group["chat_id"], text="hello team")

        client.post(f"/api/chats/{group['chat_id']}/read", headers=group["bob"])
        assert transport.to("alice-phone", "message_status_update")[-1]["status"] == "delivered"

        client.post(f"/api/chats/{group['chat_id']}/read", headers=group["carol"])
        assert transport.to("alice-phone", "message_status_update")[-1]["status"] == "read"

    def test_delete_for_everyone_reaches_all_devices(self, client, services, group):
        transport = services.router.transport
        message = send(client, group["alice"], group["chat_id"], text="oops")

        response = client.request(
            "DELETE", f"/api/chats/messages/{message['id']}",
            headers=group["alice"], json={"deleteType": "forEveryone"},
        )

        assert response.status_code == 200
        assert response.json()["deleteType"] == "forEveryone"
        deleted = transport.named("message_deleted")
        assert sorted(sid for sid, _ in deleted) == ["alice-laptop", "alice-phone", "bob-phone", "carol-phone"]
        assert all(p == {
            "messageId": message["id"],
            "chatId": str(group["chat_id"]),
            "deletedBy": group["alice_id"],
        } for _, p in deleted)
        assert history(client, group["bob"], group["chat_id"]) == []

    def test_delete_for_me_is_silent_and_local(self, client, services, group):
        transport = services.router.transport
        message = send(client, group["alice"], group["chat_id"], text="hello")

        response = client.request(
            "DELETE", f"/api/chats/messages/{message['id']}",
            headers=group["bob"], json={"deleteType": "forMe"},
        )

        assert response.status_code == 200
        assert transport.named("message_deleted") == []
        assert history(client, group["bob"], group["chat_id"]) == []
        assert len(history(client, group["carol"], group["chat_id"])) == 1

    def test_only_sender_deletes_for_everyone(self, client, group):
        message = send(client, group["alice"], group["chat_id"], text="mine")

        response = client.request(
            "DELETE", f"/api/chats/messages/{message['id']}",
            headers=group["bob"], json={"deleteType": "forEveryone"},
        )

        assert response.status_code == 403
        assert len(history(client, group["carol"], group["chat_id"])) == 1

    def test_details_title_is_group_name(self, client, group):
        chat = client.get(f"/api/chats/{group['chat_id']}", headers=group["carol"]).json()["chat"]

        assert chat["title"] == "Team"
        assert chat["memberCount"] == 3


class TestSelfChat:
    def test_init_is_idempotent(self, client, login):
        _, alice = login("alice@example.com")

        first = client.post("/api/chats/self/init", headers=alice).json()["chatId"]
        second = client.post("/api/chats/self/init", headers=alice).json()["chatId"]

        assert first == second

    def test_note_is_read_immediately(self, client, services, login):
        alice_id, alice = login("alice@example.com")
        services.presence.register("alice-phone", alice_id)
        chat_id = client.post("/api/chats/self/init", headers=alice).json()["chatId"]

        message = send(client, alice, chat_id, text="buy milk")

        assert message["status"] == "read"
        assert history(client, alice, chat_id)[0]["status"] == "read"
        assert services.router.transport.named("new_message") == []
        assert services.push.calls == []

    def test_listed_as_my_notes(self, client, login):
        _, alice = login("alice@example.com")
        chat_id = client.post("/api/chats/self/init", headers=alice).json()["chatId"]

        chats = client.get("/api/chats/list", headers=alice).json()["chats"]
        details = client.get(f"/api/chats/{chat_id}", headers=alice).json()["chat"]

        assert chats[0]["name"] == "My Notes"
        assert details["title"] == "You"


class TestChatList:
    def test_ordered_by_last_message_and_counts_unread(self, client, login):
        _, alice = login("alice@example.com")
        _, bob = login("bob@example.com")
        login("carol@example.com")
        notes = client.post("/api/chats/self/init", headers=alice).json()["chatId"]
        with_bob = create_private_chat(client, alice, "bob@example.com")
        with_carol = create_private_chat(client, alice, "carol@example.com")

        send(client, alice, with_bob, text="to bob")
        send(client, alice, with_carol, text="to carol")
        send(client, bob, with_bob, text="from bob")

        chats = client.get("/api/chats/list", headers=alice).json()["chats"]

        assert [c["chatId"] for c in chats] == [with_bob, with_carol, notes]
        assert chats[0]["name"] == "bob@example.com"
        assert chats[0]["lastMessage"] == "from bob"
        assert chats[0]["unreadCount"] == 1
        assert chats[1]["unreadCount"] == 0
        assert chats[2]["lastMessage"] is None

    def test_named_after_other_user(self, client, login):
        _, alice = login("alice@example.com")
        _, bob = login("bob@example.com")
        client.put("/api/profile/update", headers=alice, json={"name": "Alice", "phone": "5551234567"})
        chat_id = create_private_chat(client, alice, "bob@example.com")

        chats = client.get("/api/chats/list", headers=bob).json()["chats"]

        assert chats[0]["chatId"] == chat_id
        assert chats[0]["name"] == "Alice"
        assert chats[0]["otherUserEmail"] == "alice@example.com"


class TestReplies:
    def test_reply_preview_in_response_and_history(self, client, pair):
        original = send(client, pair["alice"], pair["chat_id"], text="lunch?")

        reply = send(client, pair["bob"], pair["chat_id"], text="yes", replyToId=int(original["id"]))

        assert reply["replyTo"] == {"id": original["id"], "text": "lunch?", "senderName": "alice"}
        assert history(client, pair["alice"], pair["chat_id"])[1]["replyTo"]["id"] == original["id"]

    def test_reply_to_other_chat_dropped(self, client, login, pair):
        login("carol@example.com")
        elsewhere = create_private_chat(client, pair["alice"], "carol@example.com")
        foreign = send(client, pair["alice"], elsewhere, text="secret")

        reply = send(client, pair["bob"], pair["chat_id"], text="?", replyToId=int(foreign["id"]))

        assert reply["replyTo"] is None

    def test_reply_to_missing_message_dropped(self, client, pair):
        reply = send(client, pair["bob"], pair["chat_id"], text="?", replyToId=12345)

        assert reply["replyTo"] is None


class TestPush:
    def test_push_to_recipient_devices_and_prune_invalid(self, client, services, pair):
        for token in ("bob-token", "bob-stale"):
            client.post("/api/fcm/register", headers=pair["bob"], json={"deviceToken": token, "deviceType": "android"})
        services.push.invalid = {"bob-stale"}

        message = send(client, pair["alice"], pair["chat_id"], text="hi")

        assert len(services.push.calls) == 1
        call = services.push.calls[0]
        assert set(call["tokens"]) == {"bob-token", "bob-stale"}
        assert call["title"] == "alice"
        assert call["body"] == "hi"
        assert call["data"]["messageId"] == message["id"]
        tokens = client.get("/api/fcm/tokens", headers=pair["bob"]).json()["tokens"]
        assert tokens == ["bob-token"]

    def test_group_push_title(self, client, services, group):
        client.post("/api/fcm/register", headers=group["carol"], json={"deviceToken": "carol-token"})

        send(client, group["alice"], group["chat_id"], text="x" * 150)

        assert services.push.calls[0]["title"] == "alice in Team"
        assert services.push.calls[0]["body"] == "x" * 100

    def test_push_failure_does_not_fail_send(self, client, services, pair):
        async def broken(*args, **kwargs):
            raise RuntimeError("gateway down")

        services.push.send_to_tokens = broken
        client.post("/api/fcm/register", headers=pair["bob"], json={"deviceToken": "bob-token"})

        send(client, pair["alice"], pair["chat_id"], text="hi")

        assert len(services.router.transport.to("bob-phone", "new_message")) == 1

    def test_token_moves_to_new_account(self, client, pair):
        client.post("/api/fcm/register", headers=pair["alice"], json={"deviceToken": "shared"})
        client.post("/api/fcm/register", headers=pair["bob"], json={"deviceToken": "shared"})

        assert client.get("/api/fcm/tokens", headers=pair["alice"]).json()["tokens"] == []
        assert client.get("/api/fcm/tokens", headers=pair["bob"]).json()["tokens"] == ["shared"]

    def test_unregister_token(self, client, pair):
        client.post("/api/fcm/register", headers=pair["bob"], json={"deviceToken": "bob-token"})

        response = client.post("/api/fcm/unregister", headers=pair["bob"], json={"deviceToken": "bob-token"})

        assert response.status_code == 200
        assert client.get("/api/fcm/tokens", headers=pair["bob"]).json()["tokens"] == []


class TestAccess:
    def test_empty_message_rejected(self, client, pair):
        response = client.post(f"/api/chats/{pair['chat_id']}/messages", headers=pair["alice"], json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Message text, file, or documentId is required"

    def test_non_member_forbidden(self, client, login, pair):
        _, carol = login("carol@example.com")

        assert client.get(f"/api/chats/{pair['chat_id']}/messages", headers=carol).status_code == 403
        assert client.post(
            f"/api/chats/{pair['chat_id']}/messages", headers=carol, json={"text": "hi"}
        ).status_code == 403
        assert client.post(f"/api/chats/{pair['chat_id']}/read", headers=carol).status_code == 403

    def test_unknown_chat_not_found(self, client, pair):
        response = client.get("/api/chats/9999/messages", headers=pair["alice"])

        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Chat not found"}

    def test_delete_chat_cascades(self, client, pair):
        send(client, pair["alice"], pair["chat_id"], text="hi")

        response = client.delete(f"/api/chats/{pair['chat_id']}", headers=pair["bob"])

        assert response.status_code == 200
        assert client.get(f"/api/chats/{pair['chat_id']}/messages", headers=pair["alice"]).status_code == 404
        assert client.get("/api/chats/list", headers=pair["alice"]).json()["chats"] == []

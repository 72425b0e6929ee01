import pytest

from fakes import BASE_URL, ScriptedTransport, json_response, listing_payload, status_response, thing
from pagestream.auth import AnonymousAuthenticator
from pagestream.client import ServiceClient
from pagestream.errors import MalformedResponse, ServiceUnavailable
from pagestream.http_utils import HttpResponse
from pagestream.listing import ListingOptions
from pagestream.pipeline import RequestPipeline, RetryPolicy
from pagestream.resources import Comment, Message, MoreChildren, Post, decode_comment_or_more, parse_comment_page, parse_more_children
from pagestream.stream import StreamOptions


def make_client(script: list) -> tuple[ServiceClient, ScriptedTransport]:
    transport = ScriptedTransport(script=script)
    pipeline = RequestPipeline(
        transport=transport,
        auth=AnonymousAuthenticator(),
        base_url=BASE_URL,
        retry=RetryPolicy(max_retries=0),
        sleep=lambda _: None,
    )
    return ServiceClient(pipeline), transport


def post(n: int, **extra) -> dict:  # noqa: ANN003
    return thing(n, subreddit="test", author="alice", score=3, num_comments=1, is_self=True, selftext="hi", **extra)


def comment(n: int, *, parent: str = "t3_p0") -> dict:
    return thing(n, kind="t1", body=f"comment {n}", parent_id=parent, link_id="t3_p0", author="bob")


def test_community_new_decodes_posts() -> None:
    client, transport = make_client([json_response(listing_payload([post(1), post(2)]))])

    posts = list(client.community("test&co").new(ListingOptions(page_size=2, max_items=2)))

    assert [p.identifier for p in posts] == ["t3_p1", "t3_p2"]
    first = posts[0]
    assert isinstance(first, Post)
    assert first.title == "post 1"
    assert first.community == "test"
    assert first.is_self
    assert first.score == 3
    assert first.created_utc == 1_700_000_001
    assert first.order_key == first.created_utc
    sent = transport.sent[0]
    assert sent.url == f"{BASE_URL}/r/test%26co/new"
    assert sent.params == {"raw_json": "1", "limit": "2"}


def test_community_top_sends_time_filter() -> None:
    client, transport = make_client([json_response(listing_payload([]))])

    list(client.community("python").top("week"))

    assert transport.sent[0].url.endswith("/r/python/top")
    assert transport.sent[0].params["t"] == "week"


def test_community_top_rejects_unknown_time_filter() -> None:
    client, _ = make_client([])
    with pytest.raises(ValueError):
        client.community("python").controversial("decade")


def test_user_submissions_and_comments_paths() -> None:
    client, transport = make_client([json_response(listing_payload([post(1)])), json_response(listing_payload([comment(2)]))])
    user = client.user("some user")

    assert [p.title for p in user.submissions()] == ["post 1"]
    comments = list(user.comments())

    assert transport.sent[0].url == f"{BASE_URL}/user/some+user/submitted"
    assert transport.sent[1].url == f"{BASE_URL}/user/some+user/comments"
    assert isinstance(comments[0], Comment)
    assert comments[0].body == "comment 2"
    assert comments[0].is_top_level


def test_wrong_kind_in_post_listing_is_malformed() -> None:
    client, _ = make_client([json_response(listing_payload([comment(1)]))])

    with pytest.raises(MalformedResponse):
        next(client.community("python").hot())


def test_inbox_decodes_messages_and_comment_replies() -> None:
    children = [
        thing(1, kind="t4", subject="hello", body="hi there", author="carol", new=True),
        thing(2, kind="t1", subject="comment reply", body="nice", parent_id="t1_p0", new=False),
    ]
    client, transport = make_client([json_response(listing_payload(children))])

    messages = list(client.messages().unread())

    assert transport.sent[0].url == f"{BASE_URL}/message/unread"
    assert all(isinstance(m, Message) for m in messages)
    assert messages[0].unread and not messages[0].is_comment_reply
    assert messages[0].parent_id is None
    assert messages[1].is_comment_reply
    assert messages[1].parent_id == "t1_p0"
    assert not messages[1].unread


def more(name: str, children: list[str], *, parent: str = "t3_p0") -> dict:
    return {"kind": "more", "data": {"name": name, "id": name[3:], "parent_id": parent, "count": len(children), "children": children}}


def more_children_response(things: list[dict]) -> HttpResponse:
    return json_response({"json": {"errors": [], "data": {"things": things}}})


def thread_response(comments: list[dict], *, after: str | None = None) -> HttpResponse:
    return json_response([listing_payload([post(0)]), listing_payload(comments, after=after)])


def test_comment_thread_expands_more_lazily() -> None:
    client, transport = make_client(
        [
            thread_response([comment(1), more("t1_m1", ["p3", "p4"], parent="t1_p1"), comment(2, parent="t1_p1")]),
            more_children_response([comment(3, parent="t1_p1"), more("t1_m2", ["p5"], parent="t1_p3"), comment(4, parent="t1_p1")]),
            more_children_response([comment(5, parent="t1_p3")]),
        ]
    )
    replies = client.comments("p0").replies()

    first = [next(replies).identifier, next(replies).identifier]
    assert first == ["t1_p1", "t1_p2"]
    assert len(transport.sent) == 1
    assert replies.pending_more == 1

    rest = [c.identifier for c in replies]

    assert rest == ["t1_p3", "t1_p4", "t1_p5"]
    assert replies.expansions == 2
    assert transport.sent[0].url == f"{BASE_URL}/comments/p0"
    assert transport.sent[1].url == f"{BASE_URL}/api/morechildren"
    assert transport.sent[1].params == {"api_type": "json", "link_id": "t3_p0", "children": "p3,p4", "raw_json": "1"}
    assert transport.sent[2].params["children"] == "p5"


def test_comment_thread_pages_before_expanding() -> None:
    client, transport = make_client(
        [
            thread_response([comment(1), more("t1_m1", ["p9"])], after="t1_p1"),
            thread_response([comment(2)]),
            more_children_response([comment(9)]),
        ]
    )

    replies = [c.identifier for c in client.comments("p0").replies()]

    assert replies == ["t1_p1", "t1_p2", "t1_p9"]
    assert transport.sent[1].params["after"] == "t1_p1"
    assert transport.sent[2].url.endswith("/api/morechildren")


def test_comment_thread_batches_large_more_and_skips_empty_ones() -> None:
    children = [f"c{i}" for i in range(150)]
    client, transport = make_client(
        [
            thread_response([comment(1), more("t1__", []), more("t1_m1", children)]),
            more_children_response([]),
            json_response({"json": {"errors": []}}),
        ]
    )

    replies = client.comments("p0").replies()

    assert [c.identifier for c in replies] == ["t1_p1"]
    assert replies.expansions == 2
    assert transport.sent[1].params["children"] == ",".join(children[:100])
    assert transport.sent[2].params["children"] == ",".join(children[100:])


def test_comment_thread_stops_at_max_items_without_expanding() -> None:
    client, transport = make_client([thread_response([comment(1), comment(2), more("t1_m1", ["p3"])])])

    replies = list(client.comments("p0").replies(ListingOptions(max_items=2)))

    assert [c.identifier for c in replies] == ["t1_p1", "t1_p2"]
    assert len(transport.sent) == 1


def test_comment_expansion_failure_ends_iteration() -> None:
    client, _ = make_client([thread_response([comment(1), more("t1_m1", ["p3"])]), status_response(503)])
    replies = client.comments("p0").replies()

    assert next(replies).identifier == "t1_p1"
    with pytest.raises(ServiceUnavailable):
        next(replies)
    with pytest.raises(StopIteration):
        next(replies)


def test_decode_comment_or_more() -> None:
    item = decode_comment_or_more(more("t1_m1", ["a", "b"], parent="t1_p1"))

    assert isinstance(item, MoreChildren)
    assert item.identifier == "t1_m1"
    assert item.children == ("a", "b")
    assert item.count == 2
    assert item.parent_id == "t1_p1"
    assert isinstance(decode_comment_or_more(comment(1)), Comment)


def test_parse_more_children_rejects_missing_json() -> None:
    with pytest.raises(MalformedResponse):
        parse_more_children({"things": []})
    with pytest.raises(MalformedResponse):
        parse_more_children({"json": {"errors": [["RATELIMIT", "slow down", None]]}})
    assert parse_more_children({"json": {}}).items == ()


def test_parse_comment_page_keeps_cursor() -> None:
    page = parse_comment_page(listing_payload([{"kind": "more", "data": {}}], after="t1_z"))
    assert page.items == ()
    assert page.after == "t1_z"


def test_reply_stream_requests_newest_comments() -> None:
    client, transport = make_client([json_response([listing_payload([post(0)]), listing_payload([comment(1)])])])
    poller = client.comments("p0").reply_stream(StreamOptions(page_size=10))

    assert poller.poll_once() == []
    assert transport.sent[0].params == {"sort": "new", "raw_json": "1", "limit": "10"}
    assert "t1_p1" in poller.state.seen


def test_new_stream_uses_client_defaults() -> None:
    transport = ScriptedTransport(script=[json_response(listing_payload([post(1)]))])
    pipeline = RequestPipeline(transport=transport, auth=AnonymousAuthenticator(), base_url=BASE_URL)
    client = ServiceClient(pipeline, stream_defaults=StreamOptions(page_size=7, poll_interval_seconds=1.0))

    poller = client.community("python").new_stream()

    assert poller.options.page_size == 7
    poller.poll_once()
    assert transport.sent[0].url == f"{BASE_URL}/r/python/new"
    assert transport.sent[0].params["limit"] == "7"


def test_post_without_name_or_id_is_malformed() -> None:
    client, _ = make_client([json_response(listing_payload([{"kind": "t3", "data": {"title": "orphan"}}]))])

    with pytest.raises(MalformedResponse, match="neither name nor id"):
        next(client.community("python").new())

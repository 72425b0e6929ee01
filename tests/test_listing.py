import json
import math

import pytest

from fakes import BASE_URL, PagedService, ScriptedTransport, json_response, listing_payload, status_response, thing
from pagestream.auth import AnonymousAuthenticator
from pagestream.errors import ClientError, MalformedResponse
from pagestream.http_utils import HttpResponse
from pagestream.listing import Listing, ListingOptions, parse_listing_page
from pagestream.pipeline import RequestPipeline, RetryPolicy


def make_pipeline(transport) -> RequestPipeline:  # noqa: ANN001
    return RequestPipeline(
        transport=transport,
        auth=AnonymousAuthenticator(),
        base_url=BASE_URL,
        retry=RetryPolicy(max_retries=0),
        sleep=lambda _: None,
    )


@pytest.mark.parametrize(("total", "page_size"), [(7, 3), (6, 3), (1, 25), (50, 25)])
def test_yields_every_item_in_order_with_minimal_fetches(total: int, page_size: int) -> None:
    service = PagedService(children=[thing(i) for i in range(total)])
    listing = Listing(make_pipeline(service), "/r/test/new", options=ListingOptions(page_size=page_size))

    items = list(listing)

    assert [t.identifier for t in items] == [f"t3_p{i}" for i in range(total)]
    assert len(service.sent) == math.ceil(total / page_size)
    assert listing.pages_fetched == len(service.sent)
    assert listing.items_yielded == total


def test_fetch_is_lazy() -> None:
    service = PagedService(children=[thing(i) for i in range(10)])
    listing = Listing(make_pipeline(service), "/r/test/new", options=ListingOptions(page_size=5))

    assert service.sent == []
    next(listing)
    assert len(service.sent) == 1
    for _ in range(4):
        next(listing)
    assert len(service.sent) == 1
    next(listing)
    assert len(service.sent) == 2


def test_cursor_of_previous_page_is_sent() -> None:
    service = PagedService(children=[thing(i) for i in range(5)])
    list(Listing(make_pipeline(service), "/r/test/new", options=ListingOptions(page_size=2)))

    assert "after" not in service.sent[0].params
    assert service.sent[1].params["after"] == "t3_p1"
    assert service.sent[2].params["after"] == "t3_p3"


def test_max_items_caps_output_and_reduces_last_limit() -> None:
    service = PagedService(children=[thing(i) for i in range(20)])
    listing = Listing(make_pipeline(service), "/r/test/new", options=ListingOptions(page_size=3, max_items=5))

    items = list(listing)

    assert len(items) == 5
    assert [s.params["limit"] for s in service.sent] == ["3", "2"]
    with pytest.raises(StopIteration):
        next(listing)
    assert len(service.sent) == 2


def test_max_items_zero_makes_no_request() -> None:
    service = PagedService(children=[thing(1)])
    assert list(Listing(make_pipeline(service), "/x", options=ListingOptions(max_items=0))) == []
    assert service.sent == []


def test_error_on_second_page_surfaces_then_listing_ends() -> None:
    first = json_response(listing_payload([thing(1), thing(2)], after="t3_p2"))
    transport = ScriptedTransport(script=[first, status_response(403)])
    listing = Listing(make_pipeline(transport), "/r/test/new", options=ListingOptions(page_size=2))

    assert next(listing).identifier == "t3_p1"
    assert next(listing).identifier == "t3_p2"
    with pytest.raises(ClientError):
        next(listing)
    with pytest.raises(StopIteration):
        next(listing)
    assert listing.exhausted
    assert len(transport.sent) == 2


def test_repeated_cursor_stops_listing() -> None:
    transport = ScriptedTransport(
        script=[
            json_response(listing_payload([thing(1)], after="c1")),
            json_response(listing_payload([thing(2)], after="c1")),
        ]
    )
    items = list(Listing(make_pipeline(transport), "/r/test/new", options=ListingOptions(page_size=1)))

    assert [t.identifier for t in items] == ["t3_p1", "t3_p2"]
    assert len(transport.sent) == 2


def test_before_anchor_pages_backwards() -> None:
    transport = ScriptedTransport(
        script=[
            json_response(listing_payload([thing(8), thing(9)], before="t3_p8")),
            json_response(listing_payload([thing(7)], before=None)),
        ]
    )
    options = ListingOptions(page_size=2, before="t3_p10")
    items = list(Listing(make_pipeline(transport), "/r/test/new", options=options))

    assert len(items) == 3
    assert transport.sent[0].params["before"] == "t3_p10"
    assert transport.sent[1].params["before"] == "t3_p8"
    assert "after" not in transport.sent[1].params


def test_sort_and_time_filter_params() -> None:
    transport = ScriptedTransport(script=[json_response(listing_payload([]))])
    options = ListingOptions(page_size=10, sort="top", time_filter="week")
    list(Listing(make_pipeline(transport), "/search", options=options, base_params=[("q", "rust")]))

    assert transport.sent[0].params == {"q": "rust", "limit": "10", "sort": "top", "t": "week"}


def test_malformed_json_raises_malformed_response() -> None:
    bad = HttpResponse(status=200, url=BASE_URL, headers={}, body=b"<html>")
    listing = Listing(make_pipeline(ScriptedTransport(script=[bad])), "/r/test/new")

    with pytest.raises(MalformedResponse):
        next(listing)


def test_decoder_failure_raises_malformed_response() -> None:
    def decoder(obj):  # noqa: ANN001, ANN202
        raise KeyError("title")

    transport = ScriptedTransport(script=[json_response(listing_payload([thing(1)]))])
    listing = Listing(make_pipeline(transport), "/r/test/new", decoder=decoder)

    with pytest.raises(MalformedResponse) as ei:
        next(listing)
    assert isinstance(ei.value.__cause__, KeyError)


def test_child_without_identifier_is_malformed() -> None:
    children = [thing(1), {"kind": "t3", "data": {"title": "orphan", "created_utc": 1.0}}]
    transport = ScriptedTransport(script=[json_response(listing_payload(children))])
    listing = Listing(make_pipeline(transport), "/r/test/new")

    with pytest.raises(MalformedResponse, match="neither name nor id"):
        next(listing)
    assert listing.exhausted


@pytest.mark.parametrize(
    "payload",
    [
        {"kind": "Listing"},
        {"kind": "Listing", "data": {"after": None}},
        [],
        "text",
    ],
)
def test_parse_listing_page_rejects_bad_shapes(payload) -> None:  # noqa: ANN001
    with pytest.raises(MalformedResponse):
        parse_listing_page(payload)


def test_parse_listing_page_takes_last_listing_of_array() -> None:
    payload = [listing_payload([thing(1)]), listing_payload([thing(2, kind="t1")], after="t1_p2")]
    page = parse_listing_page(json.loads(json.dumps(payload)))

    assert [c["data"]["name"] for c in page.items] == ["t1_p2"]
    assert page.after == "t1_p2"


def test_options_validation() -> None:
    with pytest.raises(ValueError):
        ListingOptions(after="t3_a", before="t3_b")
    with pytest.raises(ValueError):
        ListingOptions(page_size=0)
    with pytest.raises(ValueError):
        ListingOptions(page_size=101)
    with pytest.raises(ValueError):
        ListingOptions(time_filter="decade")
    assert ListingOptions(before="t3_b").direction == "before"
    assert ListingOptions().anchor is None

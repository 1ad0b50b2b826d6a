"""Tests for the key=value log lines."""

import logging

import pytest

from conftest import make_product
from marketplace.cart import CartService
from marketplace.utils.logger import get_logger, log_event


@pytest.fixture
def captured(caplog):
    # The marketplace logger does not propagate to the root handler
    root = get_logger()
    root.addHandler(caplog.handler)
    with caplog.at_level(logging.INFO, logger="marketplace"):
        yield caplog
    root.removeHandler(caplog.handler)


def test_log_event_skips_empty_fields(captured):
    log_event(get_logger("orders"), "orders", "assign_driver", order_id="o-1", seller_id=None, result="success")
    assert captured.messages == ["orders: method=assign_driver order_id=o-1 result=success"]


def test_log_event_respects_level(captured):
    log_event(get_logger("realtime"), "realtime", "subscribe", level=logging.DEBUG, table="messages")
    assert captured.messages == []


def test_cart_lines_use_shared_format(captured, db, buyer, seller):
    product = make_product(db, seller.user_id)

    CartService(db, buyer.user_id).add_item(product.id)

    assert f"cart: method=add_item user_id={buyer.user_id} product_id={product.id} result=success" in captured.messages

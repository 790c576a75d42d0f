from fastapi import Response

from mileage_rewards.core.pagination import (
    HARD_MAX_PAGE_SIZE,
    clamp_page_size,
    max_page_size,
    page_offset,
    set_pagination_headers,
)


def test_page_size_capped_by_env(monkeypatch):
    monkeypatch.setenv("API_MAX_PAGE_SIZE", "5")
    assert clamp_page_size(50) == 5
    assert clamp_page_size(0) == 1


def test_invalid_env_falls_back_to_hard_cap(monkeypatch):
    monkeypatch.setenv("API_MAX_PAGE_SIZE", "lots")
    assert max_page_size() == HARD_MAX_PAGE_SIZE
    monkeypatch.setenv("API_MAX_PAGE_SIZE", "-3")
    assert max_page_size() == HARD_MAX_PAGE_SIZE


def test_page_offset():
    assert page_offset(1, 20) == 0
    assert page_offset(3, 20) == 40
    assert page_offset(0, 20) == 0


def test_pagination_headers():
    response = Response()
    set_pagination_headers(response, total=41, page=2, page_size=20)
    assert response.headers["X-Total-Count"] == "41"
    assert response.headers["X-Total-Pages"] == "3"
    assert response.headers["X-Page"] == "2"

    set_pagination_headers(None, total=1, page=1, page_size=1)

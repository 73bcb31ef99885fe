"""Shared fixtures: an in-memory chunk importer and a manual flush port."""

import asyncio

import pytest

from resumx import ChunkLoader, ManualTicker, Runtime


class FakeChunks:
    """In-memory importer. Counts loads; can hold a load open or break it."""

    def __init__(self, chunks=None):
        self.chunks = dict(chunks or {})
        self.loads = []
        self.broken = {}
        self._gates = {}

    def gate(self, chunk):
        """Hold loads of chunk open until the returned event is set."""
        event = asyncio.Event()
        self._gates[chunk] = event
        return event

    async def __call__(self, chunk):
        self.loads.append(chunk)
        gate = self._gates.get(chunk)
        if gate is not None:
            await gate.wait()
        if chunk in self.broken:
            raise self.broken[chunk]
        return self.chunks[chunk]


@pytest.fixture
def chunks():
    return FakeChunks()


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def rt(chunks, ticker):
    return Runtime(loader=ChunkLoader(importer=chunks), port=ticker)

"""
The cell library and the runner that owns a live sheet.
"""
import asyncio
import inspect
import json
import logging
import math
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from resheet import resheet_sheet as sheet
from resheet.resheet_block import Action, Block, FullRecomputeBlock, safe_block
from resheet.resheet_blocks import ScriptBlock
from resheet.resheet_config import RuntimeConfig, load_config
from resheet.resheet_datatypes import ActionContext, Environment, Pending
from resheet.resheet_http import (
    HttpOptions, fetch_document, fetch_value, format_for_url, post_value, publish_document,
)
from resheet.resheet_serialize import deserialize, detect_format, format_for_path, serialize
from resheet.resheet_sheet import SheetLine, SheetState

log = logging.getLogger(__name__)


class SheetFormatError(ValueError):
    """A document could not be read as a sheet."""


# ===================================================================
# Cell library
# ===================================================================

class StdLib:
    """Python implementations of the names every cell can use.

    Methods named `_name` are exported as `name`.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig()

    def symbols(self) -> Dict[str, Any]:
        table: Dict[str, Any] = {'math': math, 'json': json, 'Pending': Pending}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                table[name[1:]] = member
        return table

    # --- Async ---
    def _sleep(self, seconds, result=None):
        return asyncio.sleep(seconds, result)

    def _gather(self, *awaitables):
        return asyncio.gather(*awaitables)

    # --- HTTP ---
    async def _http_get(self, url: str, headers: Optional[Dict[str, str]] = None):
        return await fetch_value(url, HttpOptions.from_config(self.config, headers))

    async def _http_post(self, url: str, value, headers: Optional[Dict[str, str]] = None):
        return await post_value(url, value, HttpOptions.from_config(self.config, headers))

    # --- Serialization ---
    def _serialize(self, value, fmt: str = 'json'):
        return serialize(value, fmt=fmt)

    def _deserialize(self, text, fmt: Optional[str] = None):
        return deserialize(text, fmt=fmt)


# ===================================================================
# Runner
# ===================================================================

Subscriber = Callable[[SheetState], None]


class SheetRunner:
    """Owns one sheet, applies actions to it in order, and tracks pending cells.

    Every change goes through `dispatch`. Actions dispatched while another
    one is being applied (including settlements of asynchronous cells) are
    queued and applied afterwards, so actions never interleave.
    """

    def __init__(self,
                 inner: Optional[Block] = None,
                 env: Optional[Mapping[str, Any]] = None,
                 config: Optional[RuntimeConfig] = None,
                 library: Optional[Mapping[str, Any]] = None):
        self.config = config or load_config()
        self.library = {**StdLib(self.config).symbols(), **(library or {})}
        inner = inner if inner is not None else ScriptBlock(self.library)
        if self.config.early_stop:
            self.inner = safe_block(inner)
        else:
            self.inner = FullRecomputeBlock(inner)
        self.env = Environment(env)
        self.state: SheetState = SheetState()
        self._queue: Deque[Action] = deque()
        self._applying = False
        self._subscribers: List[Subscriber] = []
        self._waiters: List[asyncio.Event] = []

    # --- Dispatch ---
    def dispatch(self, action: Action):
        """Applies `action`, then everything it queued; raises if `action` itself failed."""
        self._queue.append(action)
        if self._applying:
            return
        self._applying = True
        error = None
        try:
            while self._queue:
                current = self._queue.popleft()
                try:
                    self.state = current(self.state, ActionContext(env=self.env, dispatch=self.dispatch))
                except Exception as e:
                    if current is not action:
                        log.warning("Queued action failed: %r", e)
                        continue
                    error = e
        finally:
            self._applying = False
        self._notify()
        if error is not None:
            raise error

    def _notify(self):
        for subscriber in list(self._subscribers):
            try:
                subscriber(self.state)
            except Exception as e:
                log.warning("Subscriber %r failed: %r", subscriber, e)
        waiters, self._waiters = self._waiters, []
        for event in waiters:
            event.set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Calls `callback(state)` after every applied batch of actions."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    # --- Line operations ---
    def add_line(self, code: str = '', name: str = '', after: Optional[int] = None) -> int:
        """Adds a line running `code`, at the end or after line `after`; returns its id."""
        added: List[int] = []

        def add(state: SheetState, context: ActionContext) -> SheetState:
            line = sheet.new_line(state, self.inner, name, env=context.env)
            added.append(line.id)
            if after is None or sheet.get_line(state, after) is None:
                state = sheet.insert_line_end(state, line, self.inner, context.env, context.dispatch)
            else:
                state = sheet.insert_line_after(state, after, line, self.inner, context.env, context.dispatch)
            if not code:
                return state
            return sheet.update_line_block(state, line.id, self.inner.set_code(code), self.inner,
                                           context.env, context.dispatch)

        self.dispatch(add)
        return added[0]

    def update(self, id: int, action: Action):
        """Applies a block action to one line's state."""
        self.dispatch(lambda state, context: sheet.update_line_block(
            state, id, action, self.inner, context.env, context.dispatch,
        ))

    def set_code(self, id: int, code: str):
        self.update(id, self.inner.set_code(code))

    def rerun(self, id: int):
        self.update(id, self.inner.rerun())

    def rename(self, id: int, name: str):
        self.dispatch(lambda state, context: sheet.set_name(
            state, id, name, self.inner, context.env, context.dispatch,
        ))

    def delete(self, *ids: int):
        for line in self.state.lines:
            if line.id in ids:
                self._cancel(line)
        self.dispatch(lambda state, context: sheet.delete_lines(
            state, ids, self.inner, context.env, context.dispatch,
        ))

    def duplicate(self, id: int):
        self.dispatch(lambda state, context: sheet.duplicate_line(
            state, id, self.inner, context.env, context.dispatch,
        ))

    def set_visibility(self, id: int, visibility: str):
        self.dispatch(lambda state, context: sheet.set_visibility(state, id, visibility))

    # --- Queries ---
    @property
    def lines(self):
        return self.state.lines

    def line(self, id: int) -> Optional[SheetLine]:
        return sheet.get_line(self.state, id)

    def result(self, id: int) -> Any:
        line = sheet.get_line(self.state, id)
        if line is None:
            raise KeyError(id)
        return line.result

    @property
    def last_result(self) -> Any:
        return sheet.get_result(self.state)

    def pending_ids(self) -> List[int]:
        return [line.id for line in self.state.lines if line.result is Pending]

    async def wait_settled(self):
        """Waits until no line's result is pending."""
        while self.pending_ids():
            event = asyncio.Event()
            self._waiters.append(event)
            await event.wait()

    # --- Documents ---
    def _cancel(self, line: SheetLine):
        self.inner.cancel(line.state)

    def cancel_pending(self):
        sheet.cancel(self.state, self.inner)

    def load(self, text: str, fmt: Optional[str] = None):
        """Replaces the sheet with the document in `text` (JSON or YAML)."""
        fmt = fmt or detect_format(data_hint=text) or 'yaml'
        data = deserialize(text, fmt=fmt)
        if not isinstance(data, (list, dict)):
            raise SheetFormatError(f"Not a sheet document ({fmt})")
        # Cells of a document that failed to load must not report back
        failed = []

        def load_dispatch(action: Action):
            if not failed:
                self.dispatch(action)

        def replace_sheet(old_state: SheetState, context: ActionContext) -> SheetState:
            new_state = sheet.from_json(data, load_dispatch, context.env, self.inner)
            sheet.cancel(old_state, self.inner)
            return new_state

        try:
            self.dispatch(replace_sheet)
        except ValueError as e:
            failed.append(e)
            raise SheetFormatError(str(e)) from e
        log.info("Loaded %d lines", len(self.state.lines))

    def dump(self, fmt: str = 'json') -> str:
        return serialize(sheet.to_json(self.state, self.inner), fmt=fmt)

    def load_file(self, path):
        path = Path(path)
        self.load(path.read_text(encoding='utf-8'), fmt=format_for_path(path))

    def save_file(self, path, fmt: Optional[str] = None):
        path = Path(path)
        path.write_text(self.dump(fmt or format_for_path(path) or 'json'), encoding='utf-8')

    def _http_options(self) -> HttpOptions:
        return HttpOptions.from_config(self.config)

    async def load_url(self, url: str):
        text, fmt = await fetch_document(url, self._http_options())
        self.load(text, fmt)

    async def save_url(self, url: str, fmt: Optional[str] = None) -> int:
        """PUTs the sheet document to `url`; returns the response status."""
        fmt = fmt or format_for_url(url) or 'json'
        return await publish_document(url, self.dump(fmt), fmt, self._http_options())

    def __repr__(self) -> str:
        return f"<SheetRunner lines={len(self.state.lines)} pending={self.pending_ids()}>"

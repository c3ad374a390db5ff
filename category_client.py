"""Console side of category reordering: the HTTP gateway to the admin API and
the controller that applies a move optimistically and commits or rolls back.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests
from dotenv import load_dotenv

from category_tree import (
    CategoryNode,
    CategoryStore,
    HoverStateTracker,
    MoveInstruction,
    PersistenceFailure,
    ReferenceMismatch,
    ValidationRejection,
    resolve_move,
)

logger = logging.getLogger(__name__)

REFERENCE_ERROR_PREFIXES = ('Invalid category documentId:', 'Invalid parentDocumentId:')


class PersistenceGateway:
    """Talks to the admin category API with a cookie-carrying requests session.

    No timeout is passed to requests: a bulk submit waits as long as the server
    takes.
    """

    def __init__(self, base_url, session=None):
        self.base_url = base_url.rstrip('/')
        self.session = session if session is not None else requests.Session()

    @classmethod
    def from_env(cls, login=True):
        load_dotenv()
        base_url = os.environ.get('CATEGORY_ADMIN_URL', 'http://localhost:5000')
        gateway = cls(base_url)
        email = os.environ.get('CATEGORY_ADMIN_EMAIL')
        password = os.environ.get('CATEGORY_ADMIN_PASSWORD')
        if login and email and password:
            gateway.login(email, password)
        return gateway

    def _url(self, path):
        return f"{self.base_url}{path}"

    def _send(self, method, path, **kwargs):
        try:
            response = self.session.request(method, self._url(path), **kwargs)
        except requests.RequestException as e:
            raise PersistenceFailure(f"Request to {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= 400 or not payload.get('success', False):
            message = payload.get('message') or f"HTTP {response.status_code} from {path}"
            if response.status_code == 400 and message.startswith(REFERENCE_ERROR_PREFIXES):
                raise ReferenceMismatch(message, message.split(':', 1)[1].strip())
            raise PersistenceFailure(message)
        return payload

    def login(self, email, password):
        self._send('POST', '/admin-login', json={'email': email, 'password': password})
        logger.info("Logged in to %s as %s", self.base_url, email)

    def list_categories(self, name=None, published=None, level=None):
        """Fetch the flat category list, sorted by (sortOrder, name) server side."""
        params = {}
        if name:
            params['name'] = name
        if published:
            params['published'] = published
        if level:
            params['level'] = level
        payload = self._send('GET', '/admin/api/categories', params=params)
        return [CategoryNode.from_api(item) for item in payload.get('data', [])]

    def reorder_tree(self, nodes):
        """Submit the whole forest's (id, parent, order) tuples. Returns the updated count."""
        items = [node.to_reorder_item() for node in nodes]
        payload = self._send('POST', '/admin/api/categories/reorder-tree', json={'data': {'items': items}})
        return int(payload.get('updated', 0))


class ReconcileState(str, Enum):
    IDLE = 'idle'
    APPLYING = 'applying'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'


ALLOWED_TRANSITIONS = {
    ReconcileState.IDLE: {ReconcileState.APPLYING},
    ReconcileState.APPLYING: {ReconcileState.COMMITTED, ReconcileState.ROLLED_BACK},
    ReconcileState.COMMITTED: {ReconcileState.IDLE},
    ReconcileState.ROLLED_BACK: {ReconcileState.IDLE},
}


@dataclass
class MoveOutcome:
    state: ReconcileState
    instruction: Optional[MoveInstruction] = None
    updated: int = 0
    message: str = ''

    @property
    def committed(self):
        return self.state is ReconcileState.COMMITTED


def log_notification(level, title, message):
    logger.log(logging.WARNING if level == 'warning' else logging.ERROR, "%s: %s", title, message)


class ReconciliationController:
    """Runs one move at a time: Idle -> Applying -> Committed | RolledBack -> Idle."""

    def __init__(self, gateway, store=None, notify=None):
        self.gateway = gateway
        self.store = store if store is not None else CategoryStore()
        self.hover = HoverStateTracker()
        self.notify = notify or log_notification
        self.state = ReconcileState.IDLE
        self.filters = {}

    @property
    def accepting_moves(self):
        return self.state is ReconcileState.IDLE

    def _transition(self, new_state):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal reconcile transition {self.state.value} -> {new_state.value}")
        logger.debug("Reconcile state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def refresh(self, **filters):
        """Replace the store with a fresh fetch from the server."""
        self.filters = filters
        self.store.replace(self.gateway.list_categories(**filters))
        return self.store

    def start_drag(self, dragged_id):
        if not self.accepting_moves:
            return False
        self.hover.start(dragged_id)
        return True

    def drop(self):
        """Finish the current drag. A drop outside any zone does nothing."""
        instruction = self.hover.drop()
        if instruction is None:
            return None
        return self.move(instruction)

    def move(self, instruction):
        if not self.accepting_moves:
            logger.info("Ignoring move of %s while a previous move is being saved", instruction.dragged_id)
            return None

        try:
            snapshot = resolve_move(self.store.nodes, instruction)
        except ValidationRejection as e:
            self.notify('warning', 'Invalid move', str(e))
            return MoveOutcome(ReconcileState.IDLE, instruction, message=str(e))
        if snapshot is None:
            return MoveOutcome(ReconcileState.IDLE, instruction)

        previous = self.store.nodes
        self._transition(ReconcileState.APPLYING)
        self.store.replace(snapshot)
        try:
            updated = self.gateway.reorder_tree(snapshot)
        except PersistenceFailure as e:
            self._transition(ReconcileState.ROLLED_BACK)
            self._rollback(previous)
            self.notify('error', 'Error', str(e) or 'Failed to save category order')
            outcome = MoveOutcome(ReconcileState.ROLLED_BACK, instruction, message=str(e))
        except Exception:
            logger.exception("Unexpected error while saving move of %s", instruction.dragged_id)
            self._transition(ReconcileState.ROLLED_BACK)
            self._rollback(previous)
            self._transition(ReconcileState.IDLE)
            raise
        else:
            self._transition(ReconcileState.COMMITTED)
            outcome = MoveOutcome(ReconcileState.COMMITTED, instruction, updated=updated)
        finally:
            self.hover.cancel()
        self._transition(ReconcileState.IDLE)
        return outcome

    def _rollback(self, previous):
        try:
            self.refresh(**self.filters)
        except Exception as e:
            # Server truth is unavailable; fall back to what we had before the move
            logger.error("Reload after failed reorder also failed: %s", e)
            self.store.replace(previous)

"""
Narrative state machine for one player session.

GameState is an immutable snapshot; `reduce` maps (state, action) to the
next snapshot through a dispatch table keyed on the action class.
GameSession is the only writer: it validates player input locally, runs the
network calls through the resilience layer and dispatches the results.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

from pydantic import ValidationError

from adventure95.client.api import ApiError, GameApiClient
from adventure95.client.notifications import NotificationLog, NotificationPolicy, NotificationType
from adventure95.client.resilience import Resilience
from adventure95.core.exceptions import (
    AdventureError,
    DomainError,
    GameCompletedError,
    InvalidTransitionError,
    PreconditionError,
)
from adventure95.schemas.game import GameDetail, GameOut, OptionOut, SegmentOut

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    BROWSING = "browsing"
    LOADING = "loading"
    PLAYING = "playing"
    COMPLETED = "completed"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.IDLE, SessionStatus.CREATING, SessionStatus.BROWSING, SessionStatus.LOADING, SessionStatus.ERROR}),
    SessionStatus.CREATING: frozenset({SessionStatus.IDLE, SessionStatus.CREATING, SessionStatus.BROWSING, SessionStatus.LOADING, SessionStatus.ERROR}),
    SessionStatus.BROWSING: frozenset({SessionStatus.IDLE, SessionStatus.CREATING, SessionStatus.BROWSING, SessionStatus.LOADING, SessionStatus.ERROR}),
    SessionStatus.LOADING: frozenset({SessionStatus.IDLE, SessionStatus.PLAYING, SessionStatus.COMPLETED, SessionStatus.ERROR}),
    SessionStatus.PLAYING: frozenset({SessionStatus.IDLE, SessionStatus.LOADING, SessionStatus.COMPLETED, SessionStatus.ERROR}),
    SessionStatus.COMPLETED: frozenset({SessionStatus.IDLE, SessionStatus.CREATING, SessionStatus.BROWSING, SessionStatus.LOADING, SessionStatus.ERROR}),
    SessionStatus.ERROR: frozenset({SessionStatus.IDLE, SessionStatus.CREATING, SessionStatus.BROWSING, SessionStatus.LOADING, SessionStatus.PLAYING, SessionStatus.COMPLETED, SessionStatus.ERROR}),
}

# Statuses in which a game is held in memory
GAME_STATUSES = frozenset({SessionStatus.LOADING, SessionStatus.PLAYING, SessionStatus.COMPLETED, SessionStatus.ERROR})

RATE_LIMITED_MESSAGE = "The AI provider is rate limiting requests. Please wait a minute and try again."
UNREACHABLE_MESSAGE = "Could not reach the game server. Check your connection and try again."


@dataclass(frozen=True)
class NewGameSettings:
    genre: str = "fantasy"
    total_turns: int = 16
    title: str = ""
    character_id: Optional[int] = None


@dataclass(frozen=True)
class LogEntry:
    text: str
    kind: str  # choice | story | system


@dataclass(frozen=True)
class GameState:
    status: SessionStatus = SessionStatus.IDLE
    current_game: Optional[GameOut] = None
    segments: Tuple[SegmentOut, ...] = ()
    current_segment: Optional[SegmentOut] = None
    options: Tuple[OptionOut, ...] = ()
    game_list: Tuple[GameOut, ...] = ()
    games_loaded: bool = False
    new_game_settings: NewGameSettings = field(default_factory=NewGameSettings)
    loading_progress: int = 0
    error: Optional[str] = None
    resume_status: Optional[SessionStatus] = None
    logs: Tuple[LogEntry, ...] = ()

    @property
    def turn_count(self) -> int:
        return self.current_game.turn_count if self.current_game else 0

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED

# --- Actions ---

@dataclass(frozen=True)
class SetStatus:
    status: SessionStatus


@dataclass(frozen=True)
class SetProgress:
    value: int


@dataclass(frozen=True)
class SetError:
    message: str


@dataclass(frozen=True)
class ClearError:
    pass


@dataclass(frozen=True)
class SetGameList:
    games: Tuple[GameOut, ...]


@dataclass(frozen=True)
class InvalidateGameList:
    pass


@dataclass(frozen=True)
class UpdateNewGameSettings:
    changes: Dict[str, Any]


@dataclass(frozen=True)
class GameLoaded:
    game: GameOut
    segments: Tuple[SegmentOut, ...]


@dataclass(frozen=True)
class SegmentAdded:
    segment: SegmentOut
    game: GameOut


@dataclass(frozen=True)
class AddLog:
    text: str
    kind: str = "system"


@dataclass(frozen=True)
class ResetGame:
    status: SessionStatus = SessionStatus.IDLE

# --- Reducer ---

def _transition(state: GameState, target: SessionStatus) -> GameState:
    if target not in ALLOWED_TRANSITIONS[state.status]:
        raise InvalidTransitionError(f"Cannot go from {state.status.value} to {target.value}")
    if target == SessionStatus.PLAYING and not state.segments:
        raise InvalidTransitionError("Cannot play a game without story segments")
    if target != SessionStatus.ERROR:
        state = replace(state, error=None, resume_status=None)
    if target in GAME_STATUSES:
        return replace(state, status=target)
    return replace(
        state, status=target, current_game=None, segments=(), current_segment=None, options=(), loading_progress=0
    )


def _set_status(state: GameState, action: SetStatus) -> GameState:
    return _transition(state, action.status)


def _set_progress(state: GameState, action: SetProgress) -> GameState:
    return replace(state, loading_progress=max(0, min(100, action.value)))


def _set_error(state: GameState, action: SetError) -> GameState:
    resume = state.resume_status if state.status == SessionStatus.ERROR else state.status
    errored = _transition(state, SessionStatus.ERROR)
    return replace(errored, error=action.message, resume_status=resume, loading_progress=0)


def _clear_error(state: GameState, action: ClearError) -> GameState:
    if state.status != SessionStatus.ERROR:
        return replace(state, error=None)
    resume = state.resume_status or SessionStatus.IDLE
    if resume == SessionStatus.LOADING or (resume == SessionStatus.PLAYING and not state.segments):
        # The interrupted load never finished; fall back to what is actually held
        resume = SessionStatus.PLAYING if state.segments else SessionStatus.IDLE
    return _transition(state, resume)


def _set_game_list(state: GameState, action: SetGameList) -> GameState:
    return replace(state, game_list=tuple(action.games), games_loaded=True)


def _invalidate_game_list(state: GameState, action: InvalidateGameList) -> GameState:
    return replace(state, games_loaded=False)


def _update_new_game_settings(state: GameState, action: UpdateNewGameSettings) -> GameState:
    return replace(state, new_game_settings=replace(state.new_game_settings, **action.changes))


def _status_for(game: GameOut) -> SessionStatus:
    return SessionStatus.COMPLETED if game.is_completed else SessionStatus.PLAYING


def _game_loaded(state: GameState, action: GameLoaded) -> GameState:
    segments = tuple(sorted(action.segments, key=lambda segment: segment.sequence_number))
    if not segments:
        raise InvalidTransitionError("A loaded game must have at least one story segment")
    latest = segments[-1]
    loaded = replace(
        state,
        current_game=action.game,
        segments=segments,
        current_segment=latest,
        options=tuple(latest.options),
        loading_progress=100,
        error=None,
    )
    return _transition(loaded, _status_for(action.game))


def _segment_added(state: GameState, action: SegmentAdded) -> GameState:
    if state.segments and action.segment.sequence_number <= state.segments[-1].sequence_number:
        raise InvalidTransitionError(
            f"Segment {action.segment.sequence_number} does not follow segment {state.segments[-1].sequence_number}"
        )
    advanced = replace(
        state,
        current_game=action.game,
        segments=state.segments + (action.segment,),
        current_segment=action.segment,
        options=tuple(action.segment.options),
        loading_progress=100,
    )
    return _transition(advanced, _status_for(action.game))


def _add_log(state: GameState, action: AddLog) -> GameState:
    return replace(state, logs=state.logs + (LogEntry(text=action.text, kind=action.kind),))


def _reset_game(state: GameState, action: ResetGame) -> GameState:
    cleared = replace(
        state,
        current_game=None,
        segments=(),
        current_segment=None,
        options=(),
        logs=(),
        error=None,
        resume_status=None,
        loading_progress=0,
    )
    if cleared.status == SessionStatus.ERROR or action.status not in ALLOWED_TRANSITIONS[cleared.status]:
        # Abandoning always works, whatever was in progress
        cleared = replace(cleared, status=SessionStatus.IDLE)
    return _transition(cleared, action.status)


_REDUCERS: Dict[type, Callable[[GameState, Any], GameState]] = {
    SetStatus: _set_status,
    SetProgress: _set_progress,
    SetError: _set_error,
    ClearError: _clear_error,
    SetGameList: _set_game_list,
    InvalidateGameList: _invalidate_game_list,
    UpdateNewGameSettings: _update_new_game_settings,
    GameLoaded: _game_loaded,
    SegmentAdded: _segment_added,
    AddLog: _add_log,
    ResetGame: _reset_game,
}


def reduce(state: GameState, action) -> GameState:
    """Returns the state after `action`. Raises InvalidTransitionError for illegal moves."""
    reducer = _REDUCERS.get(type(action))
    if reducer is None:
        logger.warning(f"Unhandled action type: {type(action).__name__}")
        return state
    return reducer(state, action)

# --- Controller ---

def format_error(error: BaseException, fallback: str = "Something went wrong") -> str:
    """Human-readable message for the error field."""
    status = getattr(error, "status_code", None)
    if status == 429:
        return RATE_LIMITED_MESSAGE
    if isinstance(error, ApiError) and status == 0:
        return UNREACHABLE_MESSAGE
    if isinstance(error, ValidationError):
        return "; ".join(item["msg"] for item in error.errors()) or fallback
    return getattr(error, "message", None) or str(error) or fallback


Listener = Callable[[GameState], None]


class GameSession:
    """
    Owns the GameState of one player and every write to it.

    Advancing a turn is single-flight per game: a submit_choice issued while
    one is pending for the same game joins the pending call instead of firing
    a second request.
    """

    def __init__(
        self,
        api: GameApiClient,
        resilience: Optional[Resilience] = None,
        policy: Optional[NotificationPolicy] = None,
        notifications: Optional[NotificationLog] = None,
        progress_interval: float = 0.2,
    ):
        self.api = api
        self.resilience = resilience or Resilience()
        self.policy = policy or NotificationPolicy()
        self.notifications = notifications or NotificationLog()
        self.progress_interval = progress_interval
        self._state = GameState()
        self._listeners: List[Listener] = []
        self._retry_operation: Optional[Callable[[], Awaitable[GameState]]] = None
        # Bumped whenever the player abandons a game, so late replies are dropped
        self._generation = 0
        self._loading_game_id: Optional[int] = None

    @property
    def state(self) -> GameState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def dispatch(self, action) -> GameState:
        self._state = reduce(self._state, action)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("State listener failed")
        return self._state

    # --- Notifications ---

    def _notify(self, kind: str, notification_type: NotificationType, message: str, key: str = "", data: Optional[dict] = None, title: Optional[str] = None):
        if self.policy.should_show(kind, key, data):
            self.notifications.add(notification_type, message, title=title)

    def _fail(self, error: BaseException, retry: Optional[Callable[[], Awaitable[GameState]]], fallback: str) -> GameState:
        message = format_error(error, fallback)
        logger.warning(f"{fallback}: {message}")
        self._retry_operation = retry
        self.dispatch(SetError(message))
        self._notify("error", NotificationType.ERROR, message, key=type(error).__name__)
        return self._state

    # --- Loading progress ---

    async def _tick_progress(self):
        progress = 0
        while progress < 90:
            await asyncio.sleep(self.progress_interval)
            if self._state.status != SessionStatus.LOADING:
                return
            progress += 10
            self.dispatch(SetProgress(progress))

    def _start_progress(self) -> Optional[asyncio.Task]:
        self.dispatch(SetProgress(0))
        if self.progress_interval <= 0:
            return None
        return asyncio.ensure_future(self._tick_progress())

    @staticmethod
    def _stop_progress(task: Optional[asyncio.Task]):
        if task is not None and not task.done():
            task.cancel()

    # --- Operations ---

    def start_new_game(self) -> GameState:
        """Opens the new-game form, discarding any game held in memory."""
        self._retry_operation = None
        return self.dispatch(ResetGame(status=SessionStatus.CREATING))

    def update_new_game_settings(self, **changes) -> GameState:
        return self.dispatch(UpdateNewGameSettings(changes=changes))

    async def submit_new_game(self) -> GameState:
        """Creates the game from the form and generates its first segment."""
        settings = self._state.new_game_settings
        try:
            if self._state.status != SessionStatus.CREATING:
                raise InvalidTransitionError("Open the new game form first")
            self.api.require_api_key()
            if not settings.genre:
                raise PreconditionError("Choose a genre")
        except AdventureError as e:
            return self._fail(e, None, "Failed to create game")

        progress = self._start_progress()
        self.dispatch(SetStatus(SessionStatus.LOADING))
        try:
            game = await self.resilience.run(
                lambda: self.api.create_game(
                    settings.genre,
                    total_turns=settings.total_turns,
                    title=settings.title or None,
                    character_id=settings.character_id,
                )
            )
        except (AdventureError, ValidationError) as e:
            self._stop_progress(progress)
            return self._fail(e, self._resubmit_new_game, "Failed to create game")
        self.dispatch(InvalidateGameList())
        self._stop_progress(progress)
        return await self._start_game(game.id)

    async def _resubmit_new_game(self) -> GameState:
        self.dispatch(SetStatus(SessionStatus.CREATING))
        return await self.submit_new_game()

    async def _start_game(self, game_id: int) -> GameState:
        generation = self._generation
        self._loading_game_id = game_id
        progress = self._start_progress()
        if self._state.status != SessionStatus.LOADING:
            self.dispatch(SetStatus(SessionStatus.LOADING))
        try:
            self.api.require_api_key()
            started = await self.resilience.run(
                lambda: self.api.start_game(game_id), dedupe_key=f"start:{game_id}"
            )
        except asyncio.CancelledError:
            if generation != self._generation:
                return self._state
            raise
        except (AdventureError, ValidationError) as e:
            return self._fail(e, lambda: self._start_game(game_id), "Failed to start game")
        finally:
            self._stop_progress(progress)
        if generation != self._generation:
            return self._state
        self._loading_game_id = None
        self.dispatch(GameLoaded(game=started.game, segments=(started.first_segment,)))
        self.dispatch(AddLog(f"Started '{started.game.title}'", "system"))
        return self._state

    async def refresh_games(self, force: bool = False) -> GameState:
        """Shows the game list, fetching it only when not cached or when forced."""
        if SessionStatus.BROWSING not in ALLOWED_TRANSITIONS[self._state.status]:
            return self._fail(InvalidTransitionError("Leave the current game first"), None, "Failed to load games")
        if self._state.games_loaded and not force:
            return self.dispatch(SetStatus(SessionStatus.BROWSING))
        try:
            games = await self.resilience.run(
                self.api.list_games, dedupe_key="games:list", retry_transient=True
            )
        except (AdventureError, ValidationError) as e:
            return self._fail(e, lambda: self.refresh_games(force=True), "Failed to load games")
        self.dispatch(SetGameList(tuple(games)))
        return self.dispatch(SetStatus(SessionStatus.BROWSING))

    async def load_existing_game(self, game_id: int) -> GameState:
        """Restores a saved game, starting it first if it never got its opening segment."""
        self._abandon_current_game()
        self.dispatch(ResetGame(status=SessionStatus.LOADING))
        generation = self._generation
        progress = self._start_progress()
        try:
            detail: GameDetail = await self.resilience.run(
                lambda: self.api.get_game(game_id), dedupe_key=f"game:{game_id}", retry_transient=True
            )
        except (AdventureError, ValidationError) as e:
            self._stop_progress(progress)
            return self._fail(e, lambda: self.load_existing_game(game_id), "Failed to load game")
        self._stop_progress(progress)
        if generation != self._generation:
            return self._state

        if not detail.story_segments:
            if detail.is_completed:
                return self._fail(DomainError("This game has no story to show"), None, "Failed to load game")
            return await self._start_game(game_id)

        game = GameOut.model_validate(detail.model_dump())
        self.dispatch(GameLoaded(game=game, segments=tuple(detail.story_segments)))
        self.dispatch(AddLog(f"Loaded '{game.title}' at turn {game.turn_count}", "system"))
        return self._state

    def _validate_choice(self, option_id: Optional[int], custom_text: Optional[str]) -> Tuple[Optional[int], Optional[str], str]:
        state = self._state
        if state.status == SessionStatus.COMPLETED or (state.current_game and state.current_game.is_completed):
            raise GameCompletedError("This adventure is already over")
        if state.status != SessionStatus.PLAYING or not state.current_game:
            raise InvalidTransitionError("No game is being played")
        text = (custom_text or "").strip() or None
        if (option_id is None) == (text is None):
            raise PreconditionError("Choose an option or enter your own action")
        if option_id is not None:
            option = next((option for option in state.options if option.id == option_id), None)
            if option is None:
                raise DomainError(f"Option {option_id} is not available")
            return option_id, None, option.text
        return None, text, text

    async def submit_choice(self, option_id: Optional[int] = None, custom_text: Optional[str] = None) -> GameState:
        """Advances the current game by one turn."""
        game = self._state.current_game
        dedupe_key = f"advance:{game.id}" if game else None
        if dedupe_key and self.resilience.is_in_flight(dedupe_key):
            # Same game already advancing: wait for that turn instead of firing another
            generation = self._generation
            try:
                await self.resilience.join(dedupe_key)
            except (AdventureError, ValidationError):
                pass
            except asyncio.CancelledError:
                if generation == self._generation:
                    raise
            return self._state

        try:
            option_id, custom_text, choice_text = self._validate_choice(option_id, custom_text)
            self.api.require_api_key()
        except AdventureError as e:
            return self._fail(e, None, "Failed to submit choice")

        generation = self._generation
        self.dispatch(AddLog(f"You chose: {choice_text}", "choice"))
        self.dispatch(SetStatus(SessionStatus.LOADING))
        progress = self._start_progress()
        try:
            response = await self.resilience.run(
                lambda: self.api.submit_segment(game.id, option_id=option_id, custom_text=custom_text),
                dedupe_key=dedupe_key,
            )
        except asyncio.CancelledError:
            if generation != self._generation:
                # Abandoned through return_to_launcher
                return self._state
            raise
        except (AdventureError, ValidationError) as e:
            return self._fail(
                e, lambda: self.submit_choice(option_id=option_id, custom_text=custom_text), "Failed to generate story segment"
            )
        finally:
            self._stop_progress(progress)
        if generation != self._generation:
            return self._state

        self.dispatch(SegmentAdded(segment=response.segment, game=response.game))
        self.dispatch(InvalidateGameList())
        self.dispatch(AddLog(response.segment.content[:50] + "...", "story"))
        self._notify("autoSave", NotificationType.SUCCESS, "Game saved", key=str(game.id))
        if response.game.is_completed:
            self._notify(
                "gameCompletion",
                NotificationType.ACHIEVEMENT,
                f"You completed '{response.game.title}' in {response.game.turn_count} turns",
                key=str(game.id),
                data={"gameId": game.id, "title": response.game.title},
                title="Adventure Complete",
            )
        return self._state

    def _abandon_current_game(self):
        game_id = self._state.current_game.id if self._state.current_game else self._loading_game_id
        if game_id is not None:
            self.resilience.cancel(f"advance:{game_id}")
            self.resilience.cancel(f"start:{game_id}")
        self._loading_game_id = None
        self._generation += 1
        self._retry_operation = None

    def return_to_launcher(self) -> GameState:
        """Drops the in-memory game and cancels its pending turn. The saved game is untouched."""
        self._abandon_current_game()
        return self.dispatch(ResetGame(status=SessionStatus.IDLE))

    def clear_error(self) -> GameState:
        self._retry_operation = None
        return self.dispatch(ClearError())

    async def retry(self) -> GameState:
        """Re-runs the operation that failed, if it can be retried."""
        operation = self._retry_operation
        if self._state.status != SessionStatus.ERROR or operation is None:
            return self._state
        self._retry_operation = None
        self.dispatch(ClearError())
        return await operation()

    def dispose(self):
        self.resilience.cancel_all()
        self.policy.dispose()
        self._listeners.clear()

import typer
import asyncio
from typing import Optional
from adventure95.database import init_db
from adventure95.client.api import DEFAULT_BASE_URL, GameApiClient
from adventure95.client.notifications import NotificationLog
from adventure95.client.preferences import ClientPreferences
from adventure95.client.state_machine import GameSession, GameState, SessionStatus

cli_app = typer.Typer()

@cli_app.command("init-db")
def init_db_command():
    """
    Initializes the database.
    """
    print("Initializing the database...")
    asyncio.run(init_db())
    print("Database initialized.")


@cli_app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """
    Runs the game server.
    """
    import uvicorn
    uvicorn.run("adventure95.main:app", host=host, port=port, reload=reload)


def _show_segment(state: GameState):
    segment = state.current_segment
    if not segment:
        return
    typer.echo("")
    typer.secho(f"[{segment.location_context}]  turn {state.turn_count}/{state.current_game.total_turns}", bold=True)
    typer.echo(segment.content)
    typer.echo("")
    for option in state.options:
        typer.echo(f"  {option.id}. {option.text} ({option.risk.value})")


def _show_new_notifications(session: GameSession, seen: set):
    for notification in reversed(session.notifications.items):
        if notification.id not in seen:
            seen.add(notification.id)
            typer.secho(f"* {notification.title}: {notification.message}", fg=typer.colors.CYAN)


async def _prompt(text: str) -> str:
    return await asyncio.to_thread(typer.prompt, text, default="", show_default=False)


async def _play(
    base_url: str,
    api_key: Optional[str],
    provider: Optional[str],
    model: Optional[str],
    genre: str,
    turns: int,
    title: Optional[str],
    game_id: Optional[int],
    save_key: bool,
):
    preferences = ClientPreferences().load()
    api_settings = preferences.api_settings
    api = GameApiClient(
        base_url=base_url,
        api_key=api_key or api_settings.api_key,
        preferred_provider=provider or api_settings.preferred_provider,
        preferred_model=model or api_settings.preferred_model,
    )
    session = GameSession(api, notifications=NotificationLog(preferences.read_state), progress_interval=0)
    seen: set = set()

    try:
        if game_id is not None:
            await session.load_existing_game(game_id)
        else:
            session.start_new_game()
            session.update_new_game_settings(genre=genre, total_turns=turns, title=title or "")
            typer.echo("Generating your adventure...")
            await session.submit_new_game()

        while True:
            state = session.state
            _show_new_notifications(session, seen)
            if state.status == SessionStatus.ERROR:
                typer.secho(f"Error: {state.error}", fg=typer.colors.RED)
                answer = (await _prompt("Retry? [y/N]")).strip().lower()
                if answer != "y":
                    break
                await session.retry()
                if session.state.status == SessionStatus.IDLE:
                    break
                continue

            _show_segment(state)
            if state.status == SessionStatus.COMPLETED:
                typer.secho("THE END", bold=True)
                break
            if state.status != SessionStatus.PLAYING:
                break

            answer = (await _prompt("Your choice (number, your own action, or q to quit)")).strip()
            if answer.lower() in ("q", "quit"):
                break
            if answer.isdigit():
                await session.submit_choice(option_id=int(answer))
            else:
                await session.submit_choice(custom_text=answer)
    finally:
        session.return_to_launcher()
        session.notifications.mark_all_read()
        preferences.read_state = session.notifications.read_state
        if save_key and api.api_key:
            api_settings.api_key = api.api_key
            api_settings.save_api_key = True
        preferences.save()
        session.dispose()
        await api.aclose()


@cli_app.command()
def play(
    base_url: str = typer.Option(DEFAULT_BASE_URL, "--base-url", help="API root of the game server."),
    api_key: Optional[str] = typer.Option(None, "--api-key", envvar="ADVENTURE95_API_KEY", help="LLM provider API key."),
    provider: Optional[str] = typer.Option(None, "--provider", help="openai or groq."),
    model: Optional[str] = typer.Option(None, "--model"),
    genre: str = typer.Option("fantasy", "--genre"),
    turns: int = typer.Option(16, "--turns", min=1, max=100),
    title: Optional[str] = typer.Option(None, "--title"),
    game_id: Optional[int] = typer.Option(None, "--game", help="Continue a saved game instead of starting one."),
    save_key: bool = typer.Option(False, "--save-key", help="Remember the API key in the preferences file."),
):
    """
    Plays a text adventure in the terminal.
    """
    asyncio.run(_play(base_url, api_key, provider, model, genre, turns, title, game_id, save_key))

if __name__ == "__main__":
    cli_app()

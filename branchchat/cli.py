"""CLI interface for branchchat"""

import asyncio

import typer

from branchchat.loggers import ConsoleLogger

logger = ConsoleLogger()
app = typer.Typer()


def _settings():  # type: ignore
    from branchchat.config.config import load_settings

    settings = load_settings(logger=logger)
    if settings is None:
        raise typer.Exit(1)
    return settings


@app.command()
def create_default_config_file() -> None:
    """
    Create a default configuration file, or reset the configuration
    file to default values.
    """
    from branchchat.config.config import create_default_config_file

    try:
        create_default_config_file()
    except Exception as e:
        logger.error(str(e))
        raise typer.Exit(1)


@app.command()
def tree_info(
    tree_id: str = typer.Argument(..., help="Conversation tree id"),
    turn_id: str = typer.Option(
        None,
        "--turn",
        "-t",
        help="Turn to inspect (defaults to the current turn)",
    ),
) -> None:
    """
    Print the turns and the variable storage statistics of a stored
    conversation tree.
    """
    from branchchat.state.manager import BranchStateManager
    from branchchat.stores.conversation_tree import ConversationTreeStore
    from branchchat.stores.storage import create_storage

    settings = _settings()

    async def _info() -> bool:
        store = ConversationTreeStore(
            create_storage(settings.storage),
            BranchStateManager(settings.state, logger=logger),
            collection=settings.storage.collection,
            logger=logger,
        )
        tree = await store.get_tree(tree_id)
        if tree is None:
            return False
        target: str = turn_id or tree.current_turn_id
        stats = await store.get_storage_statistics(tree_id, target)
        state = await store.resolve_state(tree_id, target)

        print(f"Tree {tree.tree_id} (owner {tree.owner_id})")
        print(f"  turns: {len(tree.turns)}")
        print(f"  current turn: {tree.current_turn_id}")
        if stats is not None:
            print(f"  path to {target}: {stats.total_nodes} turns")
            print(f"  snapshots: {stats.snapshot_count}")
            print(f"  diffs: {stats.diff_count}")
            print(f"  stored bytes: {stats.total_size}")
            print(
                f"  compression ratio: {stats.compression_ratio:.1%}"
            )
        print(f"  variables: {state}")
        return True

    try:
        found: bool = asyncio.run(_info())
    except Exception as e:
        logger.error(str(e))
        raise typer.Exit(1)
    if not found:
        logger.error(f"Conversation tree {tree_id} not found")
        raise typer.Exit(1)


@app.command()
def list_extensions(
    folder: str = typer.Option(
        None,
        "--folder",
        "-f",
        help="Extension folder (defaults to the configured folder)",
    ),
) -> None:
    """
    List the extensions found in the extension folder.
    """
    from branchchat.extensions.loader import ExtensionLoader

    if folder is None:  # type: ignore
        folder = _settings().extensions.folder

    result = ExtensionLoader(logger).discover(folder)
    for manifest in result.found:
        permissions: str = ", ".join(p.value for p in manifest.permissions)
        print(
            f"{manifest.id} {manifest.version} [{manifest.category.value}]"
            f" - {manifest.name}"
            + (f" (permissions: {permissions})" if permissions else "")
        )
    for path, error in result.errors:
        print(f"error in {path}: {error}")
    if not result.found and not result.errors:
        print("No extensions found.")


@app.command()
def send(
    tree_id: str = typer.Argument(..., help="Conversation tree id"),
    message: str = typer.Argument(..., help="The user message"),
    parent: str = typer.Option(
        None,
        "--parent",
        "-p",
        help="Turn to continue (defaults to the current turn)",
    ),
) -> None:
    """
    Send a message to a conversation tree, creating the tree if it
    does not exist, and print the response.
    """
    from branchchat.pipeline.dialogue import DialogueService

    settings = _settings()

    async def _send() -> int:
        service = DialogueService.from_settings(settings, logger=logger)
        if settings.extensions.enabled:
            await service.load_extensions(settings.extensions.folder)
        if await service.session(tree_id).get_tree(tree_id) is None:
            await service.start_conversation(tree_id)
        reply = await service.send_message(tree_id, message, parent)
        if not reply.ok:
            logger.error(reply.error or "Message not processed")
            return 1
        print(reply.response)
        for prompt in reply.next_prompts:
            print(f"  > {prompt}")
        print(f"(turn {reply.turn_id})")
        return 0

    try:
        code: int = asyncio.run(_send())
    except Exception as e:
        logger.error(str(e))
        raise typer.Exit(1)
    if code:
        raise typer.Exit(code)

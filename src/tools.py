"""
Tool definitions and scope requirements.

Each tool is registered with the scope a token must carry to see or call it:

    tools:read   add, whoami, list_notes
    tools:write  create_note, update_note, delete_note

A token with ["tools:read"] sees three tools; with both scopes, all six.

Notes and the user profile are stored through the DataAccess capability and
always filtered by the caller's subject, so one user's calls never see
another user's rows.
"""

import datetime

from src.registry import Parameter, ToolContext, ToolRegistry

READ_SCOPE = "tools:read"
WRITE_SCOPE = "tools:write"

USER_ENTITY = "user"
NOTE_ENTITY = "note"


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


async def add(args, ctx: ToolContext) -> str:
    return str(args.a + args.b)


async def whoami(args, ctx: ToolContext) -> dict:
    subject = ctx.session.subject
    profile = await ctx.data.get_or_create(
        USER_ENTITY, {"subject": subject}, {"first_seen": _now()}
    )
    return {
        "subject": subject,
        "client_id": ctx.session.client_id,
        "scopes": ctx.session.scopes,
        "first_seen": profile.get("first_seen"),
    }


async def create_note(args, ctx: ToolContext) -> dict:
    return await ctx.data.create(
        NOTE_ENTITY,
        {
            "owner": ctx.session.subject,
            "title": args.title,
            "body": args.body or "",
            "updated_at": _now(),
        },
    )


async def list_notes(args, ctx: ToolContext) -> list[dict]:
    return await ctx.data.select(NOTE_ENTITY, {"owner": ctx.session.subject})


async def update_note(args, ctx: ToolContext) -> dict:
    rows = await ctx.data.update(
        NOTE_ENTITY,
        {"id": args.id, "owner": ctx.session.subject},
        {"body": args.body, "updated_at": _now()},
    )
    if not rows:
        raise LookupError(f"Note '{args.id}' not found")
    return rows[0]


async def delete_note(args, ctx: ToolContext) -> str:
    removed = await ctx.data.delete(NOTE_ENTITY, {"id": args.id, "owner": ctx.session.subject})
    if not removed:
        raise LookupError(f"Note '{args.id}' not found")
    return f"Deleted note {args.id}"


def register_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(
        "add",
        "Add two numbers together",
        {"a": Parameter("number"), "b": Parameter("number")},
        add,
        scope=READ_SCOPE,
    )
    registry.register(
        "whoami",
        "Describe the user and client this session is authorized for",
        {},
        whoami,
        scope=READ_SCOPE,
    )
    registry.register(
        "list_notes",
        "List the caller's notes",
        {},
        list_notes,
        scope=READ_SCOPE,
    )
    registry.register(
        "create_note",
        "Create a note",
        {
            "title": Parameter("string", description="Short title"),
            "body": Parameter("string", required=False, description="Note text"),
        },
        create_note,
        scope=WRITE_SCOPE,
    )
    registry.register(
        "update_note",
        "Replace the text of one of the caller's notes",
        {
            "id": Parameter("string", description="Note id from create_note or list_notes"),
            "body": Parameter("string", description="New note text"),
        },
        update_note,
        scope=WRITE_SCOPE,
    )
    registry.register(
        "delete_note",
        "Delete one of the caller's notes",
        {"id": Parameter("string", description="Note id")},
        delete_note,
        scope=WRITE_SCOPE,
    )
    return registry

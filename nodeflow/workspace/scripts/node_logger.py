"""
Node Logger - logs this node's metadata and neighbors.

Insert between two nodes; the input is passed through unchanged.
"""


def describe(view):
    if view is None:
        return None
    return {"id": view.id, "type": view.type or "unknown"}


def activate(ctx):
    result = {
        "self": {
            "type": ctx.node.type or "unknown",
            "subType": ctx.node.sub_type or "none",
            "id": ctx.node.id,
        },
        "leftNode": describe(ctx.left_node),
        "rightNode": describe(ctx.right_node),
    }
    print("[Node Logger]", result)
    ctx.emit("message", result)

"""
Default "Hello" script - minimal starter template.

ctx.node   - the current node (id, type, sub_type, label, data)
ctx.input  - the merged input payload
ctx.log    - append a log line
"""


def activate(ctx):
    print("Hello from", ctx.node.label)
    print("Node ID:", ctx.node.id)
    print("Ready to go!")

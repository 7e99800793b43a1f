"""
Data Pipeline - validates, transforms and outputs structured data.

Runs a 3-stage ETL over ``records`` taken from the input payload, falling
back to the node data and then to 42.
"""


def activate(ctx):
    print("Pipeline started:", ctx.node.label)

    # Stage 1: Validate
    ctx.report(progress=10, task="Validating input")
    print("Stage 1: validating input schema...")
    payload = ctx.input if isinstance(ctx.input, dict) else {}
    records = payload.get("records") or ctx.node.data.get("records") or 42
    if not records:
        raise ValueError("No records in input")
    print("  ✓ %d records validated" % records)

    # Stage 2: Transform
    ctx.report(progress=40, task="Transforming data")
    print("Stage 2: transforming data...")
    transformed = [
        {"id": i + 1, "value": round(((i * 37) % 100) / 100.0, 4)}
        for i in range(records)
    ]
    print("  ✓ %d records transformed" % len(transformed))

    # Stage 3: Output
    ctx.report(progress=80, task="Writing output")
    print("Stage 3: writing output...")
    print("📦 wrote %d records" % len(transformed))

    print("Pipeline complete!")
    return {"records": len(transformed), "rows": transformed}

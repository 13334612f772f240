"""
flowsim - compose workflow graphs and simulate them step by step.

Typical use:

    from flowsim.graph import GraphStore, NodeType, Position, new_node

    store = GraphStore()
    start = store.add_node(new_node(NodeType.START, Position(x=0, y=0)))
    end = store.append_after(start.id, NodeType.END)
    result = await store.run_simulation('{"amount": 8500}')
"""

__version__ = "0.1.0"

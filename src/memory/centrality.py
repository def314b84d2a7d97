"""PageRank-style centrality over the association graph."""

from collections import defaultdict

from .models import Association


def compute_centrality(
    node_ids: list[str],
    edges: list[Association],
    damping: float = 0.85,
    iterations: int = 30,
    tolerance: float = 1e-6,
) -> dict[str, float]:
    """Score every node in [0, 1], highest-ranked node = 1.0.

    Edges are walked in both directions regardless of kind; the weight of
    each edge scales how much rank flows along it. Isolated nodes score 0.
    """
    if not node_ids:
        return {}
    nodes = set(node_ids)
    neighbours: dict[str, dict[str, float]] = defaultdict(dict)
    for edge in edges:
        if edge.source_id not in nodes or edge.target_id not in nodes:
            continue
        w = max(edge.weight, 0.0)
        neighbours[edge.source_id][edge.target_id] = neighbours[edge.source_id].get(edge.target_id, 0.0) + w
        neighbours[edge.target_id][edge.source_id] = neighbours[edge.target_id].get(edge.source_id, 0.0) + w

    connected = [n for n in node_ids if neighbours.get(n)]
    if not connected:
        return {n: 0.0 for n in node_ids}

    n = len(connected)
    rank = {node: 1.0 / n for node in connected}
    out_weight = {node: sum(neighbours[node].values()) or 1.0 for node in connected}
    base = (1.0 - damping) / n

    for _ in range(iterations):
        new_rank = {}
        for node in connected:
            incoming = sum(rank[src] * w / out_weight[src] for src, w in neighbours[node].items())
            new_rank[node] = base + damping * incoming
        delta = sum(abs(new_rank[k] - rank[k]) for k in connected)
        rank = new_rank
        if delta < tolerance:
            break

    top = max(rank.values())
    scores = {node: 0.0 for node in node_ids}
    for node, value in rank.items():
        scores[node] = round(value / top, 6) if top else 0.0
    return scores

"""Non-maximum suppression over :class:`~lumen_facemesh.types.Detection` lists."""

from __future__ import annotations

from collections.abc import Sequence

from ..types import Detection, RectF


def iou(a: RectF, b: RectF) -> float:
    """Intersection over union; 0.0 when the union is empty."""
    inter_w = max(0.0, min(a.xmax, b.xmax) - max(a.xmin, b.xmin))
    inter_h = max(0.0, min(a.ymax, b.ymax) - max(a.ymin, b.ymin))
    intersection = inter_w * inter_h
    area_a = max(0.0, a.width) * max(0.0, a.height)
    area_b = max(0.0, b.width) * max(0.0, b.height)
    union = area_a + area_b - intersection
    if union <= 0.0:
        return 0.0
    return intersection / union


def _weighted_merge(seed: Detection, cluster: Sequence[Detection]) -> Detection:
    total = sum(d.score for d in cluster)
    if total <= 0.0:
        return seed

    coords = [0.0, 0.0, 0.0, 0.0]
    num_kp = min(len(d.keypoints_xy) for d in cluster)
    keypoints = [0.0] * num_kp
    for det in cluster:
        w = det.score / total
        box = det.bounding_box
        coords[0] += box.xmin * w
        coords[1] += box.ymin * w
        coords[2] += box.xmax * w
        coords[3] += box.ymax * w
        for k in range(num_kp):
            keypoints[k] += det.keypoints_xy[k] * w

    return Detection(
        bounding_box=RectF(*coords),
        score=seed.score,
        keypoints_xy=tuple(keypoints),
    )


def non_max_suppression(
    detections: Sequence[Detection],
    iou_threshold: float,
    score_threshold: float,
    weighted: bool = False,
) -> list[Detection]:
    """Greedy NMS on descending score.

    A candidate survives as a seed when its IoU with every kept seed is below
    ``iou_threshold``. Otherwise it joins the cluster of the first (highest
    scoring) seed it overlaps. With ``weighted`` each seed's box and keypoints
    become the score-weighted mean of its cluster; the seed keeps its own score.
    Equal scores keep their input order.
    """
    candidates = [d for d in detections if d.score >= score_threshold]
    if not candidates:
        return []

    # sorted() is stable, so ties keep input order.
    ordered = sorted(candidates, key=lambda d: d.score, reverse=True)

    seeds: list[Detection] = []
    clusters: list[list[Detection]] = []
    for det in ordered:
        owner = -1
        for idx, seed in enumerate(seeds):
            if iou(seed.bounding_box, det.bounding_box) >= iou_threshold:
                owner = idx
                break
        if owner < 0:
            seeds.append(det)
            clusters.append([det])
        else:
            clusters[owner].append(det)

    if not weighted:
        return seeds
    return [
        _weighted_merge(seed, cluster) if len(cluster) > 1 else seed
        for seed, cluster in zip(seeds, clusters)
    ]

from .anchors import ANCHOR_OPTIONS, AnchorOptions, anchors_for, generate_anchors
from .coordinates import (
    convert_image_to_tensor,
    crop_from_normalized_roi,
    crop_rect,
    decode_image,
    extract_aligned_square,
    face_detection_to_roi,
    keep_aspect_resize_and_pad,
    letterbox,
    remove_letterbox,
    stretch_image_to_tensor,
    unpad_coordinate,
)
from .decoder import decode_detections, sigmoid_clipped
from .landmarks import unpack_landmarks
from .nms import iou, non_max_suppression

__all__ = [
    "ANCHOR_OPTIONS",
    "AnchorOptions",
    "anchors_for",
    "generate_anchors",
    "convert_image_to_tensor",
    "crop_from_normalized_roi",
    "crop_rect",
    "decode_image",
    "extract_aligned_square",
    "face_detection_to_roi",
    "keep_aspect_resize_and_pad",
    "letterbox",
    "remove_letterbox",
    "stretch_image_to_tensor",
    "unpad_coordinate",
    "decode_detections",
    "sigmoid_clipped",
    "unpack_landmarks",
    "iou",
    "non_max_suppression",
]

"""
Ex-Out - Person Removal Service
===============================

Upload up to three photos, pick one person, find the same person in the
other photos by face matching, and remove them with a body mask plus an
AI inpainting call.

Uses dlib for 128-dim face encodings and YOLO for person segmentation.

Components:
- config.py: Environment-driven settings
- face_utils.py: Embedding comparison, cross-image matching, dlib detector
- masks.py: Mask building and combining
- segmentation.py: YOLO person segmentation
- registry.py: Model handle lifecycle
- storage.py: Transient in-memory byte store
- image_processor.py: Inpainting (remote + local fallback)
- orchestrator.py: Per-request removal pipeline
- models.py: Pydantic request/response models
- main.py: FastAPI application
"""

__version__ = "1.0.0"

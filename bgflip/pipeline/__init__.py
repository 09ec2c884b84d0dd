"""
Image Processing Pipeline

Linear upload pipeline:
1. Normalize - convert the upload to PNG
2. Remove background - Clipdrop API
3. Flip - horizontal mirror
4. Store - write to the object store
"""

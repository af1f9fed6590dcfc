"""
Backward block-window selection.

Windows are counted back from a chain height captured by the caller, so the
range of a given page does not move while new blocks arrive.
"""

from .models import WindowCursor


def select_window(
    current_height: int,
    page_index: int,
    window_size: int,
    genesis_block: int = 0
) -> WindowCursor:
    """
    Compute the inclusive block range for a window page.

    Page 0 ends at ``current_height``; each following page ends one window
    further back. A page that lies entirely before ``genesis_block`` is
    replaced by the earliest valid window.

    Args:
        current_height: Chain height captured once for the session
        page_index: Window page, 0 being the most recent
        window_size: Number of blocks per window
        genesis_block: Earliest block that may be scanned

    Returns:
        WindowCursor with ``is_last_page`` set when no older window exists

    Raises:
        ValueError: On a negative page index or non-positive window size
    """
    if page_index < 0:
        raise ValueError(f"Window page must be non-negative, got {page_index}")
    if window_size <= 0:
        raise ValueError(f"Window size must be positive, got {window_size}")

    to_block = current_height - page_index * window_size

    if to_block < genesis_block:
        return WindowCursor(
            from_block=genesis_block,
            to_block=max(genesis_block, min(genesis_block + window_size - 1, current_height)),
            page_index=page_index,
            is_last_page=True
        )

    from_block = max(genesis_block, to_block - window_size + 1)
    return WindowCursor(
        from_block=from_block,
        to_block=to_block,
        page_index=page_index,
        is_last_page=from_block == genesis_block
    )

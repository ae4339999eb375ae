from tqdm import tqdm


MIN_PROGRESS_TOTAL = 5


def create_progress_bar(*, total: int, dry_run: bool, enabled: bool) -> tqdm | None:
    """Return a progress bar, or None when disabled or the collection is too small to bother."""
    if not enabled or total < MIN_PROGRESS_TOTAL:
        return None
    return tqdm(total=total, desc="Dry run" if dry_run else "Processing", unit="rec", dynamic_ncols=True)

"""Fold finished thread trees into summary statistics."""

from __future__ import annotations

from mailweave.engine.models import EmailThread, ThreadNode


def summarize_thread(root: ThreadNode, thread_id: str) -> EmailThread:
    """Summarize one root tree.

    Args:
        root: Root node of the tree
        thread_id: Id to give the thread (algorithmic id or group id)

    Returns:
        EmailThread with the root's subject and id, the newest date in the
        tree, and message/unread counts over every node
    """
    last_updated = root.message.date
    unread = 0
    total = 0

    for node in root.iter_nodes():
        total += 1
        if node.message.is_unread:
            unread += 1
        if node.message.date > last_updated:
            last_updated = node.message.date

    return EmailThread(
        id=thread_id,
        root_message_id=root.message.message_id or None,
        subject=root.message.subject,
        last_updated=last_updated,
        unread_count=unread,
        message_count=total,
    )

"""User-configured shell hooks."""

import os
import subprocess
import sys
from dataclasses import dataclass

from chatters.logging import get_logger
from chatters.models import Conversation, Message

logger = get_logger("hooks")


def _message_body(message: Message) -> str:
    parts = [message.text] if message.text else []
    for attachment in message.body.attachments:
        parts.append(f"[{attachment.name or 'attachment'} {attachment.human_size()}]")
    return " ".join(parts)


@dataclass
class Hooks:
    """Shell commands run on engine events.

    `on_new_message` runs through `sh -c` for every new live incoming
    message, detached, with details passed in CHATTERS_* environment
    variables.
    """

    on_new_message: str | None = None

    def do_on_new_message(self, conversation: Conversation, message: Message) -> None:
        if not self.on_new_message:
            return

        sender = conversation.participant(message.sender_id)
        env = dict(os.environ)
        env.update(
            {
                "CHATTERS_APP_NAME": os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "chatters",
                "CHATTERS_BACKEND": conversation.key.backend_id,
                "CHATTERS_CONVERSATION": str(conversation.key),
                "CHATTERS_CONVERSATION_NAME": conversation.name,
                "CHATTERS_SENDER_NAME": sender.name if sender else message.sender_id,
                "CHATTERS_MESSAGE_BODY": _message_body(message),
            }
        )
        try:
            subprocess.Popen(
                ["sh", "-c", self.on_new_message],
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            logger.warning("Failed to execute on_new_message hook: error=%s", exc)

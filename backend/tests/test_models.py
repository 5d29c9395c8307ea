from app.models import ChatMessage, Conversation, Notification, ReadReceipt


def test_documents_import_and_name_their_collections():
    assert Conversation.Settings.name == "conversations"
    assert ChatMessage.Settings.name == "chat_messages"
    assert ReadReceipt.Settings.name == "read_receipts"
    assert Notification.Settings.name == "notifications"


def test_notification_read_status_uses_compound_index():
    assert Notification.model_fields["read_status"].annotation is bool
    assert Notification.model_fields["read_status"].default is False
    assert [("user_id", 1), ("read_status", 1)] in Notification.Settings.indexes

# rmsgd protocol constants (numeric keys and event types)

RMSG_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_ROOM = 5
K_BODY = 6

# Handshake
T_HELLO = 1
T_WELCOME = 2

# Rooms
T_JOIN_ROOM = 10
T_JOINED_ROOM = 11
T_LEAVE_ROOM = 12
T_LEFT_ROOM = 13

# Messaging
T_SEND_MESSAGE = 20
T_RECEIVE_MESSAGE = 21
T_MESSAGE_SENT = 22
T_MESSAGE_ERROR = 23
T_TYPING = 24
T_USER_TYPING = 25
T_MARK_READ = 26
T_MESSAGE_READ = 27

# Presence
T_USER_STATUS = 30
T_USER_OFFLINE = 31

T_PING = 40
T_PONG = 41

T_ERROR = 50

# Socket-style event names, used in logs and mirrored by clients.
EVENT_NAMES = {
    T_HELLO: "hello",
    T_WELCOME: "welcome",
    T_JOIN_ROOM: "join-room",
    T_JOINED_ROOM: "joined-room",
    T_LEAVE_ROOM: "leave-room",
    T_LEFT_ROOM: "left-room",
    T_SEND_MESSAGE: "send-message",
    T_RECEIVE_MESSAGE: "receive-message",
    T_MESSAGE_SENT: "message-sent",
    T_MESSAGE_ERROR: "message-error",
    T_TYPING: "typing",
    T_USER_TYPING: "user-typing",
    T_MARK_READ: "mark-read",
    T_MESSAGE_READ: "message-read",
    T_USER_STATUS: "user:status",
    T_USER_OFFLINE: "user-offline",
    T_PING: "ping",
    T_PONG: "pong",
    T_ERROR: "error",
}

# Room namespaces. Personal rooms are reserved for direct delivery; every
# client-supplied room id is placed under the chat namespace.
PERSONAL_ROOM_PREFIX = "user:"
CHAT_ROOM_PREFIX = "chat:"

# Message types accepted on send-message.
MESSAGE_TYPES = ("text", "image", "file")
DEFAULT_MESSAGE_TYPE = "text"

# Message status values assigned by the message store.
STATUS_SENT = "sent"
STATUS_READ = "read"

# Presence status values.
PRESENCE_ONLINE = "online"
PRESENCE_OFFLINE = "offline"

# Client-facing reason for any failure while sending a message. The exact
# cause is only logged.
SEND_FAILED_REASON = "Failed to send message"

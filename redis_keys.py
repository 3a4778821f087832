REDIS_META_KEY = "room:meta:{slug}" # room id - room metadata hash
REDIS_PEERS_KEY = "room:peers:{slug}" # room id - set of peer IDs
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel name
REDIS_PEER_KEY = "peer:{peer_id}" # peer id - peer metadata hash

# **Example `room:meta:{id}` hash fields**
# - `room_id` = `{roomId}`
# - `name` = room name
# - `max_participants` = integer
# - `created_at` = ISO timestamp
# - `router_id` = media router id

# **Example `peer:{id}` hash fields**
# - `peer_id`, `room_id`, `display_name`
# - `joined_at` = ISO timestamp

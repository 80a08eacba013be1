"""Redis Lua scripts for distributed rate limiting.

These scripts provide atomic operations to prevent read-modify-write races
when several instances share one sliding-window log per client.
"""

# Atomic trim + count + insert over a sorted set of request timestamps.
# The caller generates the member identity once; on denial the script removes
# that same member, so a rejected request never leaves an entry behind.
#
# KEYS[1] - sorted set for the client
# ARGV[1] - now (epoch ms)
# ARGV[2] - window size (ms)
# ARGV[3] - max requests per window
# ARGV[4] - member identity for this request
#
# Returns {allowed (0|1), count, oldest_score}. `count` includes this request
# when allowed and excludes it when denied.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Drop entries at or before the window start
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

    local count = redis.call('ZCARD', key)
    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, window)

    local allowed = 1
    if count >= limit then
        redis.call('ZREM', key, member)
        allowed = 0
    else
        count = count + 1
    end

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_score = now
    if oldest[2] then
        oldest_score = tonumber(oldest[2])
    end

    return {allowed, count, oldest_score}
"""

"""
Redis key patterns for the streaming gateway.
Centralizing key patterns for maintainability.
"""

class RedisKeys:
    PREFIX = "streamgate"

    @staticmethod
    def stream_token(token):
        """Key holding a serialized StreamToken"""
        return f"{RedisKeys.PREFIX}:token:{token}"

    @staticmethod
    def token_ref(token, ref_id):
        """Key holding a sub-resource reference handed out under a token"""
        return f"{RedisKeys.PREFIX}:token:{token}:ref:{ref_id}"

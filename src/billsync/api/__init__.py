"""Operations HTTP API."""

"""Constants for authentication and OAuth routes."""

SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_USERINFO_URL = "https://api.spotify.com/v1/me"
SPOTIFY_SCOPES = "playlist-read-private user-library-read"

GITHUB_AUTH_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USERINFO_URL = "https://api.github.com/user"

USER_AGENT = "spotify-backup/0.1.0"

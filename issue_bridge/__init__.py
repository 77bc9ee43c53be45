"""
IssueBridge cog: GitHub issue state → Discord forum thread lock state.
"""

__red_end_user_data_statement__ = (
    "This cog stores no personal data. It keeps the configured GitHub token and, per guild, "
    "which forum channels follow which GitHub repositories."
)


async def setup(bot):
    from .issue_bridge import IssueBridge

    await bot.add_cog(IssueBridge(bot))

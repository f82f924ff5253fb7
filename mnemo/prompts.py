"""Default English prompt templates (``str.format`` placeholders)."""

INITIAL_REDUCE = """Summarize my notes (enclosed by XML tags) so that the question "{query}" could still be answered in detail afterwards.
Only summarize the notes that could contribute to answering the question and skip the others without mentioning them further.
For each summarized note, keep its source reference (format: [[<Source Path>]]) so the summary stays attributable.
Please keep the markdown formatting of the notes.
<notes>
{content}
</notes>
Summary:"""

REDUCE = """Summarize my notes (enclosed by XML tags) so that the question "{query}" could still be answered in detail afterwards.
Make sure to keep the markdown formatting and the source references (format: [[<Source Path>]]) in the notes.
<notes>
{content}
</notes>
Summary:"""

RAG = """As my assistant, please respond to my query, using only my existing knowledge (enclosed by XML tags).
Make sure to use Markdown formatting and add the source references (format: [[<Source Path>]]) from the knowledge to your answer.
<knowledge>
{context}
</knowledge>
<chathistory>
{chat_history}
</chathistory>
<query>
{query}
</query>
Response:"""

CONVERSATION = """Respond to my query as my assistant based on the chat history.
<chathistory>
{chat_history}
</chathistory>
<query>
{query}
</query>
Response:"""

# Sent instead of a prompt that would not fit the context window
CHAT_HISTORY_TOO_LONG = "Please echo 'The chat history is too long, please create a new chat or summarize it.'"

"""Canned name, color and phrase pools for synthetic participants."""

NAMES = (
    "Rahul", "Sneha", "Arjun", "Priya", "Kiran", "Meera", "Ravi", "Anjali",
    "Vikram", "Divya", "Arun", "Kavya", "Suresh", "Deepika", "Akash", "Nisha",
)

AVATAR_COLORS = (
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#96CEB4", "#FFEAA7",
    "#DDA0DD", "#98D8C8", "#F7DC6F", "#BB8FCE", "#85C1E9",
)

CONVERSATIONAL = (
    "Hey there! How are you doing?",
    "Nice to meet you! What brings you here today?",
    "I love chatting with new people!",
    "What do you like to do for fun?",
    "How has your day been so far?",
    "Do you have any hobbies?",
    "I enjoy meeting people from different places",
    "What kind of music do you listen to?",
    "Are you from around here?",
    "I hope you're having a great day!",
    "Tell me something interesting about yourself",
    "What's your favorite movie?",
    "Do you like traveling?",
    "I find conversations like this really interesting",
    "What makes you happy?",
    "Have you tried this chat before?",
    "I think it's cool how we can connect with strangers",
    "What's the weather like where you are?",
    "Do you have any pets?",
    "What did you do today?",
)

# Opening lines are the first five conversational phrases.
GREETINGS = CONVERSATIONAL[:5]

ACKNOWLEDGMENTS = (
    "That sounds really cool!",
    "Oh interesting, tell me more",
    "I can relate to that",
    "That's awesome!",
    "Really? That's nice",
    "I see, that makes sense",
    "Wow, that's great!",
    "That sounds fun!",
    "I'd love to hear more about that",
    "That's really interesting",
)
